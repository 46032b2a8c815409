"""Object-storage collaborator — download an uploaded file's bytes."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import requests

from nexusgov_rag.errors import DownloadFailure
from nexusgov_rag.resilience import RetryPolicy

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    @abstractmethod
    def download(self, url: str) -> bytes:
        """Return the object's bytes or raise :class:`DownloadFailure`."""
        ...


class _RetryableStatus(Exception):
    """Internal marker for 5xx / 429 responses worth another attempt."""


RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (requests.ConnectionError, requests.Timeout, _RetryableStatus)


class HttpObjectStorage(ObjectStorage):
    """Downloads signed storage URLs over HTTP(S).

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds.
    retry:
        Retry policy for connection errors, timeouts, 429 and 5xx.
    session:
        Optional ``requests.Session`` (connection pooling, test doubles).
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
        session: requests.Session | None = None,
    ) -> None:
        from nexusgov_rag.config import settings

        self.timeout = timeout if timeout is not None else settings.download_timeout
        self._retry = retry or RetryPolicy.from_settings(retry_on=RETRYABLE_ERRORS)
        self._session = session or requests.Session()

    def _get(self, url: str) -> bytes:
        resp = self._session.get(url, timeout=self.timeout)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _RetryableStatus(f"HTTP {resp.status_code}")
        resp.raise_for_status()
        return resp.content

    def download(self, url: str) -> bytes:
        if not url:
            raise DownloadFailure("Document has no download URL")
        try:
            data = self._retry.call(self._get, url)
        except (requests.RequestException, _RetryableStatus) as exc:
            raise DownloadFailure(f"Failed to download file: {exc}") from exc
        logger.info("File downloaded: %d bytes", len(data))
        return data
