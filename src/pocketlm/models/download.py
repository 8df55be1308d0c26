"""Authenticated, progress-reporting artifact download.

Streams a remote model file to disk in fixed-size chunks and mirrors the
transfer into the shared :class:`~pocketlm.state.StateStore`. A failed
transfer never leaves a partial file behind.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import httpx

from pocketlm.errors import (
    BusyError,
    DownloadError,
    DownloadInProgressError,
    EmptyBodyError,
    HttpStatusError,
    NETWORK_ERROR_MESSAGE,
    NetworkError,
    UnauthorizedError,
)
from pocketlm.state import (
    Activity,
    DownloadPhase,
    DownloadStatus,
    LifecycleState,
    StateStore,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4096


def _abandon_download(state: LifecycleState) -> LifecycleState | None:
    """Mark a still-running download as failed (used on unexpected exit)."""
    if state.download.phase is not DownloadPhase.IN_PROGRESS:
        return None
    return replace(
        state,
        download=DownloadStatus(DownloadPhase.FAILED, state.download.progress),
        last_error="Download interrupted.",
    )


def _declared_length(resp: httpx.Response) -> int | None:
    """Return Content-Length when present and positive."""
    raw = resp.headers.get("content-length")
    if raw is None:
        return None
    try:
        length = int(raw)
    except ValueError:
        return None
    return length if length > 0 else None


class ModelDownloader:
    """Single-flight downloader for the model artifact.

    Args:
        store: Shared lifecycle state.
        client: Optional pre-configured async client (tests inject a mock
            transport here). When omitted, a client is created per download.
        chunk_size: Bytes read from the body per iteration.
    """

    def __init__(
        self,
        store: StateStore,
        client: httpx.AsyncClient | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be > 0, got {chunk_size}")
        self._store = store
        self._client = client
        self._chunk_size = chunk_size

    async def download(self, url: str, destination: Path, token: str) -> Path:
        """Download ``url`` to ``destination`` with a bearer token.

        Progress is published as ``DownloadStatus(IN_PROGRESS, fraction)``
        after every chunk when the server declares a length. On success the
        state becomes ``COMPLETE``, ``model_path`` points at ``destination``
        and ``needs_initialization`` is set.

        Args:
            url: Remote artifact URL.
            destination: Local file to write.
            token: Bearer token; the header is sent even when it is empty.

        Returns:
            The destination path.

        Raises:
            DownloadInProgressError: Another download is running (state untouched).
            BusyError: Initialization or generation is running (state untouched).
            UnauthorizedError: Server answered 401.
            HttpStatusError: Any other non-success status.
            EmptyBodyError: The body contained no bytes.
            NetworkError: Malformed URL, or a transport or file-system failure.
        """
        blocker = self._store.try_begin(
            Activity.DOWNLOAD,
            download=DownloadStatus(DownloadPhase.IN_PROGRESS, 0.0),
            needs_initialization=False,
            last_error=None,
        )
        if blocker is Activity.DOWNLOAD:
            raise DownloadInProgressError(blocker)
        if blocker is not None:
            raise BusyError(blocker)

        logger.info("Downloading %s -> %s", url, destination)
        try:
            await self._transfer(url, destination, token)
        except DownloadError as exc:
            self._fail(destination, str(exc))
            raise
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as exc:
            message = str(exc) or NETWORK_ERROR_MESSAGE
            self._fail(destination, message)
            raise NetworkError(message) from exc
        finally:
            # Nothing may leave the store claiming a transfer is running.
            if self._store.transition(_abandon_download) is not None:
                self._remove_partial(destination)

        logger.info("Download complete: %s", destination)
        return destination

    async def _transfer(self, url: str, destination: Path, token: str) -> None:
        headers = {"Accept-Encoding": "identity", "Authorization": f"Bearer {token}"}
        if not token:
            logger.warning("No access token configured; the server may reject the download")

        if self._client is not None:
            await self._stream_to_file(self._client, url, headers, destination)
            return
        async with httpx.AsyncClient(timeout=None, follow_redirects=True) as client:
            await self._stream_to_file(client, url, headers, destination)

    async def _stream_to_file(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        destination: Path,
    ) -> None:
        async with client.stream("GET", url, headers=headers) as resp:
            if resp.status_code == 401:
                raise UnauthorizedError()
            if not resp.is_success:
                raise HttpStatusError(resp.status_code, resp.reason_phrase)

            total = _declared_length(resp)
            bytes_read = 0
            destination.parent.mkdir(parents=True, exist_ok=True)
            with open(destination, "wb") as out:
                async for chunk in resp.aiter_bytes(self._chunk_size):
                    out.write(chunk)
                    bytes_read += len(chunk)
                    if total is not None:
                        self._store.update(
                            download=DownloadStatus(
                                DownloadPhase.IN_PROGRESS, min(bytes_read / total, 1.0)
                            )
                        )

        if bytes_read == 0:
            raise EmptyBodyError()
        if total is not None and bytes_read < total:
            raise NetworkError(f"Download incomplete: received {bytes_read} of {total} bytes")

        self._store.update(
            download=DownloadStatus(DownloadPhase.COMPLETE, 1.0),
            model_path=str(destination),
            needs_initialization=True,
        )

    def _fail(self, destination: Path, message: str) -> None:
        self._remove_partial(destination)
        progress = self._store.state.download.progress
        self._store.update(
            download=DownloadStatus(DownloadPhase.FAILED, progress),
            last_error=message,
        )
        logger.error("Download failed: %s", message)

    @staticmethod
    def _remove_partial(destination: Path) -> None:
        try:
            destination.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove partial download %s: %s", destination, exc)
