"""
Byte store for uploads and extracted text.

put() writes under a storage directory with a random suffix before the
extension and returns a URL; fetch() downloads by URL. When a public base
URL is configured, stored objects are addressed over HTTP; otherwise they
get file:// URLs that fetch() reads directly.
"""

import logging
import secrets
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote, unquote, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import BlobFetchError, StageTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class BlobRef:
    """Location of a stored object."""
    url: str
    pathname: str
    content_type: Optional[str] = None
    size: int = 0


def _make_session() -> requests.Session:
    """Session with retry backoff on 5xx responses."""
    s = requests.Session()
    retries = Retry(total=3, backoff_factor=1, status_forcelist=[500, 502, 503, 504])
    s.mount("https://", HTTPAdapter(max_retries=retries))
    s.mount("http://", HTTPAdapter(max_retries=retries))
    return s


def with_random_suffix(pathname: str) -> str:
    """cases/1/uploads/plan.pdf -> cases/1/uploads/plan-3f9a1c2b.pdf"""
    path = PurePosixPath(pathname)
    suffix = secrets.token_hex(4)
    return str(path.with_name(f"{path.stem}-{suffix}{path.suffix}"))


class BlobStore:
    """
    Directory-backed byte store.

    Args:
        root_dir: Where objects are written
        public_base_url: Base URL that serves root_dir; file:// URLs when None
        fetch_timeout: Seconds allowed for one download
    """

    def __init__(
        self,
        root_dir: str = "./blob_storage",
        public_base_url: Optional[str] = None,
        fetch_timeout: float = 20.0,
    ):
        self.root = Path(root_dir).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.fetch_timeout = fetch_timeout
        self._session = _make_session()

    def put(
        self,
        pathname: str,
        data: bytes,
        access: str = "public",
        content_type: Optional[str] = None,
        add_random_suffix: bool = True,
    ) -> BlobRef:
        """
        Store bytes and return their reference.

        Re-uploading the same logical content creates a new object; there is
        no deduplication.
        """
        if access != "public":
            raise ValueError(f"Unsupported blob access level: {access}")

        stored_name = with_random_suffix(pathname) if add_random_suffix else pathname
        target = (self.root / stored_name).resolve()
        if self.root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {pathname}")

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

        if self.public_base_url:
            url = f"{self.public_base_url}/{quote(stored_name)}"
        else:
            url = target.as_uri()

        logger.debug(f"Stored blob {stored_name} ({len(data)} bytes)")
        return BlobRef(url=url, pathname=stored_name, content_type=content_type, size=len(data))

    def fetch(self, url: str) -> bytes:
        """
        Download an object by URL.

        Raises:
            BlobFetchError: Non-2xx response or missing local object
            StageTimeoutError: The download exceeded fetch_timeout
        """
        parsed = urlparse(url)
        if parsed.scheme == "file":
            path = Path(unquote(parsed.path))
            if not path.exists():
                raise BlobFetchError(404)
            return path.read_bytes()

        try:
            response = self._session.get(url, timeout=self.fetch_timeout)
        except requests.Timeout as e:
            raise StageTimeoutError("blob_fetch") from e

        if not response.ok:
            raise BlobFetchError(response.status_code)
        return response.content
