"""HTTP client for the remote ingest server."""

from __future__ import annotations

import http.client
import logging
import os
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger("pocketstream.ingest")

STREAM_START_ENDPOINT = "/api/stream/start"
STREAM_UPLOAD_PREFIX = "/api/stream/upload/"
PLAYLIST_NAME = "stream.m3u8"
PLAYLIST_SUFFIX = ".m3u8"
M3U8_CONTENT_TYPE = "application/vnd.apple.mpegurl"
# urllib would otherwise label request bodies as form data.
SEGMENT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_TIMEOUT = 10.0


class StartStreamError(RuntimeError):
    """The server refused (or never answered) the session start."""

    def __init__(
        self, message: str, status: Optional[int] = None, body: str = ""
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass
class UploadResult:
    path: str
    ok: bool
    status: Optional[int] = None
    size: int = 0
    latency_ms: int = 0
    error: Optional[str] = None


def normalize_destination(destination: str) -> str:
    return destination.rstrip("/")


def upload_url(destination: str, name: str) -> str:
    return normalize_destination(destination) + STREAM_UPLOAD_PREFIX + name


def playlist_upload_url(destination: str) -> str:
    return upload_url(destination, PLAYLIST_NAME)


def _status_line(status: int, reason: str) -> str:
    return f"{status} {reason}".strip()


class IngestClient:
    """Talks to the ingest server on behalf of a single stream session.

    The ``opener`` is built once by the caller (see
    :func:`urllib.request.build_opener`) and shared by every request of the
    run, including the uploads performed from worker threads.
    """

    def __init__(
        self,
        destination: str,
        token: str,
        *,
        opener: Optional[urllib.request.OpenerDirector] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.destination = normalize_destination(destination)
        self._token = token
        self._opener = opener or urllib.request.build_opener()
        self._timeout = timeout

    def start_stream(self) -> None:
        """Announce the session; raises :class:`StartStreamError` unless HTTP 200."""

        url = self.destination + STREAM_START_ENDPOINT
        request = urllib.request.Request(url, method="POST")
        request.add_header("Authorization", self._token)

        LOGGER.info("Starting stream, informing the server at %s", url)
        try:
            with self._opener.open(request, timeout=self._timeout) as response:
                status = response.getcode()
                reason = getattr(response, "reason", "") or ""
                body = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            raise StartStreamError(
                f"Server responded with status code: {_status_line(exc.code, exc.reason)}",
                status=exc.code,
                body=body,
            ) from exc
        except urllib.error.URLError as exc:
            reason = getattr(exc, "reason", exc)
            raise StartStreamError(f"Cannot reach {url}: {reason}") from exc
        except (OSError, http.client.HTTPException) as exc:
            raise StartStreamError(f"Cannot reach {url}: {exc}") from exc

        if status != 200:
            raise StartStreamError(
                f"Server responded with status code: {_status_line(status, reason)}",
                status=status,
                body=body,
            )
        LOGGER.info("Server accepted the stream start")

    def upload(self, path: str) -> UploadResult:
        """POST the bytes of ``path`` to the upload endpoint.

        Never raises: a missing file, a transport failure or a non-2xx answer
        is logged and reported through the returned :class:`UploadResult`.
        """

        name = os.path.basename(path)
        url = upload_url(self.destination, name)

        if not os.path.exists(path):
            LOGGER.error("File at %s doesn't exist; skipping upload", path)
            return UploadResult(path, False, error="missing file")

        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            LOGGER.error("Cannot read %s: %s", path, exc)
            return UploadResult(path, False, error=f"read failed: {exc}")

        headers = {"Authorization": self._token}
        if path.endswith(PLAYLIST_SUFFIX):
            headers["Content-Type"] = M3U8_CONTENT_TYPE
        else:
            headers["Content-Type"] = SEGMENT_CONTENT_TYPE

        LOGGER.info("Uploading %s of size %d", path, len(data))
        started = time.monotonic()
        status: Optional[int] = None
        error_text: Optional[str] = None

        try:
            request = urllib.request.Request(
                url, data=data, headers=headers, method="POST"
            )
            with self._opener.open(request, timeout=self._timeout) as response:
                status = response.getcode()
                LOGGER.info(
                    "Status: %s (%s)",
                    _status_line(status, getattr(response, "reason", "") or ""),
                    name,
                )
        except urllib.error.HTTPError as exc:
            status = exc.code
            error_text = f"HTTP {_status_line(exc.code, exc.reason)}"
            LOGGER.error("Status: %s (%s)", _status_line(exc.code, exc.reason), name)
        except urllib.error.URLError as exc:
            error_text = f"URLError: {getattr(exc, 'reason', exc)}"
            LOGGER.error("Upload of %s failed: %s", name, error_text)
        except (OSError, ValueError, http.client.HTTPException) as exc:
            error_text = f"{exc.__class__.__name__}: {exc}"
            LOGGER.error("Upload of %s failed: %s", name, error_text)

        latency_ms = int((time.monotonic() - started) * 1000)
        ok = error_text is None and status is not None and 200 <= status < 300
        if error_text is None and not ok:
            error_text = f"HTTP {status}"
        return UploadResult(
            path,
            ok,
            status=status,
            size=len(data),
            latency_ms=latency_ms,
            error=error_text,
        )
