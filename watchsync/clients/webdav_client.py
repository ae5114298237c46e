import logging
import ssl
import xml.etree.ElementTree as ET
from typing import List, Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from ..models import ConnectionFailure, ConnectionResult

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:resourcetype/></d:prop></d:propfind>'
)


def normalize_base_url(url: str) -> str:
    return url if url.endswith("/") else url + "/"


class RemoteStore:
    """
    Thin WebDAV client over httpx. Paths are absolute URLs; use file_url()
    to build one under the base. Errors surface as httpx exceptions.
    """

    def __init__(self, base_url: str, auth: Optional[Tuple[str, str]] = None,
                 timeout: float = 30, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = normalize_base_url(base_url)
        self.client = httpx.Client(auth=auth, timeout=timeout, transport=transport)

    def file_url(self, filename: str) -> str:
        return self.base_url + filename

    def exists(self, url: str) -> bool:
        resp = self.client.head(url)
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return True

    def read(self, url: str) -> bytes:
        resp = self.client.get(url)
        resp.raise_for_status()
        return resp.content

    def write(self, url: str, data: bytes):
        resp = self.client.put(url, content=data)
        resp.raise_for_status()

    def ensure_directory(self, url: str):
        url = normalize_base_url(url)
        if self.exists(url):
            return
        resp = self.client.request("MKCOL", url)
        # 405: collection already exists on some servers
        if resp.status_code != 405:
            resp.raise_for_status()
        logger.debug(f"Created directory {url}")

    def list(self, url: str) -> List[str]:
        """Names of the entries directly under the collection at url."""
        url = normalize_base_url(url)
        resp = self.client.request(
            "PROPFIND", url,
            headers={"Depth": "1", "Content-Type": "application/xml"},
            content=PROPFIND_BODY,
        )
        resp.raise_for_status()

        own_path = unquote(urlparse(url).path).rstrip("/")
        names = []
        root = ET.fromstring(resp.content)
        for response in root.iter(f"{DAV_NS}response"):
            href = response.findtext(f"{DAV_NS}href")
            if not href:
                continue
            path = unquote(urlparse(href).path).rstrip("/")
            if path == own_path:
                continue
            names.append(path.rsplit("/", 1)[-1])
        return names

    def test_connection(self) -> ConnectionResult:
        try:
            self.list(self.base_url)
            logger.info(f"Connection test succeeded for {self.base_url}")
            return ConnectionResult.ok()
        except Exception as e:
            failure = classify_failure(e)
            logger.error(f"Connection test failed for {self.base_url} ({failure.value}): {e}")
            return ConnectionResult.failed(failure, str(e) or type(e).__name__)

    def close(self):
        self.client.close()


def classify_failure(exc: Exception) -> ConnectionFailure:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 401:
            return ConnectionFailure.AUTHENTICATION
        if status == 403:
            return ConnectionFailure.PERMISSION
        if status == 404:
            return ConnectionFailure.NOT_FOUND
        return ConnectionFailure.OTHER

    if isinstance(exc, httpx.TimeoutException):
        return ConnectionFailure.TIMEOUT

    if isinstance(exc, httpx.ConnectError):
        message = str(exc).upper()
        if isinstance(exc.__cause__, ssl.SSLError) or "SSL" in message or "CERTIFICATE" in message:
            return ConnectionFailure.TLS
        return ConnectionFailure.UNREACHABLE

    if isinstance(exc, ssl.SSLError):
        return ConnectionFailure.TLS

    return ConnectionFailure.OTHER
