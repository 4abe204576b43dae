"""
Fetching source files from URLs.

Conditional requests reuse the ETag / Last-Modified validators from the
previous fetch of the same URL; a 304 answer means the stored copy is still
current.
"""
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import unquote, urlparse

import requests

from event_atlas.core.config import settings
from event_atlas.core.errors import PipelineError, TransientStageError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class UrlFetchError(PipelineError):
    """The URL answered but cannot be imported (4xx, too large, ...)."""

    error_type = "fetch_error"


@dataclass
class FetchResult:
    url: str
    status_code: int
    content: Optional[bytes] = None
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304

    def validators(self) -> Dict[str, Optional[str]]:
        return {"etag": self.etag, "last_modified": self.last_modified}


def file_name_from_url(url: str, default: str = "download.csv") -> str:
    path = unquote(urlparse(url).path or "")
    name = os.path.basename(path.rstrip("/"))
    return name or default


def fetch_url(
    url: str,
    *,
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
    timeout: Optional[float] = None,
    max_bytes: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> FetchResult:
    """
    Download ``url`` with a timeout and a size cap.

    Raises:
        TransientStageError: network failures, timeouts and 5xx answers
        UrlFetchError: 4xx answers and oversized bodies
    """
    timeout = timeout or settings.url_fetch_timeout_seconds
    max_bytes = max_bytes or settings.url_fetch_max_bytes
    headers = {"User-Agent": settings.geocoding_user_agent}
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified

    http = session or requests
    try:
        response = http.get(url, headers=headers, timeout=timeout, stream=True)
    except requests.exceptions.Timeout as exc:
        raise TransientStageError(f"Timed out fetching {url}") from exc
    except requests.exceptions.RequestException as exc:
        raise TransientStageError(f"Could not fetch {url}: {exc}") from exc

    with response:
        if response.status_code == 304:
            logger.info("Source %s not modified since last fetch", url)
            return FetchResult(url, 304, etag=etag, last_modified=last_modified)
        if response.status_code >= 500:
            raise TransientStageError(f"{url} responded with HTTP {response.status_code}")
        if response.status_code >= 400:
            raise UrlFetchError(f"{url} responded with HTTP {response.status_code}")

        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise UrlFetchError(f"{url} is larger than the {max_bytes} byte limit")

        chunks = []
        received = 0
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                received += len(chunk)
                if received > max_bytes:
                    raise UrlFetchError(f"{url} is larger than the {max_bytes} byte limit")
                chunks.append(chunk)
        except requests.exceptions.RequestException as exc:
            raise TransientStageError(f"Connection dropped while fetching {url}: {exc}") from exc

        return FetchResult(
            url=url,
            status_code=response.status_code,
            content=b"".join(chunks),
            content_type=response.headers.get("Content-Type"),
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
        )
