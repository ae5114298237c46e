"""
Repair for UTF-8 text that was mis-decoded as ISO-8859-1.

A string is suspect when it contains U+FFFD or a C1 control character
(U+0080..U+009F). Suspect strings are re-encoded as ISO-8859-1 and decoded
as UTF-8. Anything that does not survive that round-trip is returned
unchanged. This is a best-effort guess, not a charset detector.
"""
import logging
from typing import Optional

from .models import KEY_SEPARATOR, HistoryRecord

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = "\ufffd"


def looks_misdecoded(text: str) -> bool:
    for ch in text:
        if ch == REPLACEMENT_CHAR or 0x80 <= ord(ch) < 0xA0:
            return True
    return False


def _repair_once(text: str) -> str:
    try:
        return text.encode("iso-8859-1").decode("utf-8")
    except UnicodeError:
        # U+FFFD and other code points above 0xFF have no single-byte form
        return text


def repair_text(text: Optional[str]) -> Optional[str]:
    """
    Applied until the text stops changing, so text that was mis-decoded
    twice is also recovered and repair_text(repair_text(s)) == repair_text(s).
    Every successful pass shortens the string.
    """
    fixed = text
    while fixed and looks_misdecoded(fixed):
        candidate = _repair_once(fixed)
        if candidate == fixed:
            break
        fixed = candidate
    if fixed != text:
        logger.debug(f"Repaired encoding {text!r} -> {fixed!r}")
    return fixed


def repair_key(key: Optional[str]) -> Optional[str]:
    """Repair the site segment of a site@@@vod@@@episode key."""
    if not key:
        return key
    parts = key.split(KEY_SEPARATOR)
    if len(parts) < 3:
        return key
    fixed_site = repair_text(parts[0])
    if fixed_site == parts[0]:
        return key
    return KEY_SEPARATOR.join([fixed_site] + parts[1:])


def repair_record(record: HistoryRecord) -> HistoryRecord:
    key = repair_key(record.key)
    vod_name = repair_text(record.vod_name)
    if key == record.key and vod_name == record.vod_name:
        return record
    if key != record.key:
        logger.debug(f"Repaired history key {record.key!r} -> {key!r}")
    return record.model_copy(update={"key": key, "vod_name": vod_name})
