import logging
from typing import Dict, Iterable, List, Optional, Tuple

from .models import HistoryRecord, ReconcileResult

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    def __init__(self, tolerance_ms: int = 1000, progress_lead_ms: int = 60000):
        self.tolerance_ms = tolerance_ms
        self.progress_lead_ms = progress_lead_ms

    def should_update(self, local: HistoryRecord, remote: HistoryRecord) -> Tuple[bool, str]:
        """
        Decides whether remote replaces local. Returns (should_update, reason).
        """
        time_diff = remote.create_time - local.create_time
        both_valid = remote.has_valid_position and local.has_valid_position

        # 1. Remote is clearly newer
        if time_diff > self.tolerance_ms:
            return True, f"remote is newer by {time_diff}ms"

        # 2. Effectively simultaneous. Progress decides.
        if abs(time_diff) <= self.tolerance_ms:
            if both_valid:
                if remote.position > local.position:
                    return True, f"remote progress is further ({remote.position} > {local.position})"
                return False, "local progress is further or equal"
            if remote.has_valid_position:
                return True, "remote has a valid position, local does not"
            return False, "no valid remote position"

        # 3. Local is newer, but remote may have kept playing on another device
        # with a stale clock.
        if both_valid and remote.position > local.position + self.progress_lead_ms:
            return True, (
                f"local is newer by {-time_diff}ms but remote progress leads "
                f"({remote.position} > {local.position})"
            )
        return False, f"local is newer by {-time_diff}ms"

    def reconcile(self, local: Iterable[HistoryRecord],
                  remote: Iterable[Optional[HistoryRecord]]) -> ReconcileResult:
        """
        Computes which remote records to insert locally and which should
        fully replace their local counterpart. Inputs are not modified.
        """
        local_by_key: Dict[str, HistoryRecord] = {}
        for record in local:
            if record is not None and record.key:
                local_by_key[record.key] = record

        to_insert: List[HistoryRecord] = []
        to_update: List[HistoryRecord] = []

        for record in remote:
            if record is None or not record.key:
                logger.warning("Skipping remote history record without a key")
                continue

            current = local_by_key.get(record.key)
            if current is None:
                logger.debug(f"New record {record.vod_name} ({record.key})")
                to_insert.append(record)
                continue

            update, reason = self.should_update(current, record)
            if update:
                logger.debug(f"Updating {record.vod_name} ({record.key}): {reason}")
                to_update.append(record)
            else:
                logger.debug(f"Keeping local {record.vod_name} ({record.key}): {reason}")

        logger.info(f"Reconciled history: {len(to_insert)} to insert, {len(to_update)} to update")
        return to_insert, to_update
