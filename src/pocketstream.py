#!/usr/bin/env python3
# pocketstream.py: bridge a local RTMP ingest to a remote HLS ingest server.
# - ffmpeg listens once on the RTMP address and remuxes to HLS (no re-encode).
# - Either ffmpeg pushes segments itself, or we tail its log and upload them.
# - One session per process; the run ends when ffmpeg exits.

from __future__ import annotations

import argparse
import logging
import os
import re
import subprocess
import sys
import threading
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from delivery import DEFAULT_MAX_PENDING, DEFAULT_WORKERS, DeliveryPool
from ingest_client import (
    DEFAULT_TIMEOUT,
    PLAYLIST_NAME,
    IngestClient,
    StartStreamError,
    normalize_destination,
    playlist_upload_url,
)
from segment_log import follow_segments
from socket_probe import (
    DEFAULT_ATTEMPTS,
    DEFAULT_INTERVAL,
    ProbeError,
    ProbeResult,
    wait_for_listener,
)

LOGGER = logging.getLogger("pocketstream")

APP_NAME = "PocketStream - live"
DEFAULT_SOURCE = "localhost:9000"
DEFAULT_SEGMENT_DURATION = "2"
DEFAULT_OUTPUT_DIRECTORY = "live"
DEFAULT_FFMPEG = "ffmpeg"
ERROR_LOG_FILE = Path("pocketstream-errors.log")
TERMINATE_TIMEOUT = 5.0

_DURATION_RE = re.compile(r"^\d+(\.\d+)?$")


class ConfigError(ValueError):
    """Invalid or incomplete session configuration."""


@dataclass(frozen=True)
class StreamSession:
    token: str
    source: str
    destination: str
    segment_duration: str
    output_directory: Path
    ffmpeg_upload: bool = False
    persist_errors: bool = False
    ffmpeg: str = DEFAULT_FFMPEG
    upload_workers: int = DEFAULT_WORKERS
    max_pending_uploads: int = DEFAULT_MAX_PENDING
    request_timeout: float = DEFAULT_TIMEOUT

    @property
    def playlist_path(self) -> Path:
        return self.output_directory / PLAYLIST_NAME

    def describe(self) -> str:
        mode = "ffmpeg upload" if self.ffmpeg_upload else f"local files in {self.output_directory}"
        return (
            f"source={self.source} destination={self.destination} "
            f"segment={self.segment_duration}s mode={mode}"
        )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _env_flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _positive_int(value: object, name: str) -> int:
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {name}: {value!r}") from None
    if parsed <= 0:
        raise ConfigError(f"Invalid (non-positive) {name}: {parsed}")
    return parsed


def validate_segment_duration(value: str) -> str:
    """Accept a plain decimal number of seconds, as ffmpeg's -hls_time expects."""

    text = (value or "").strip()
    if text.startswith("-") and _DURATION_RE.match(text[1:]):
        raise ConfigError(f"Invalid (negative) segment duration: {text}")
    if not _DURATION_RE.match(text):
        raise ConfigError(f"Invalid segment duration: {value!r}")
    return text


def validate_source(source: str) -> str:
    if not source:
        raise ConfigError("No RTMP source specified!")
    try:
        parts = urllib.parse.urlsplit(f"//{source}")
        port = parts.port  # raises on an out-of-range or non-numeric port
    except ValueError as exc:
        raise ConfigError(f"Invalid RTMP source {source!r}: {exc}") from None
    if not parts.hostname:
        raise ConfigError(f"Invalid RTMP source {source!r}: missing host")
    if port == 0:
        raise ConfigError(f"Invalid RTMP source {source!r}: port 0")
    return source


def validate_destination(destination: str) -> str:
    if not destination:
        raise ConfigError("No destination specified!")
    try:
        parts = urllib.parse.urlsplit(destination)
        parts.port  # noqa: B018 - raises on a bad port
    except ValueError as exc:
        raise ConfigError(f"Invalid destination URL {destination!r}: {exc}") from None
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ConfigError(
            f"Invalid destination URL {destination!r}: expected scheme://host[:port]"
        )
    return normalize_destination(destination)


def build_session(
    args: argparse.Namespace, env: Optional[Mapping[str, str]] = None
) -> StreamSession:
    """Merge flags, environment and defaults into a validated session."""

    env = os.environ if env is None else env

    def _pick(flag_value: Optional[str], env_name: str, default: str = "") -> str:
        if flag_value is not None:
            return str(flag_value).strip()
        return env.get(env_name, default).strip()

    token = _pick(args.token, "POCKETSTREAM_TOKEN")
    if not token:
        raise ConfigError("No token specified!")

    source = validate_source(_pick(args.source, "POCKETSTREAM_SOURCE", DEFAULT_SOURCE))
    destination = validate_destination(_pick(args.destination, "POCKETSTREAM_DEST"))
    duration = validate_segment_duration(
        _pick(args.segment, "POCKETSTREAM_SEGMENT", DEFAULT_SEGMENT_DURATION)
    )
    output_directory = Path(
        _pick(args.output, "POCKETSTREAM_OUTPUT_DIR", DEFAULT_OUTPUT_DIRECTORY)
    ).expanduser()

    workers = _positive_int(
        _pick(args.workers, "POCKETSTREAM_UPLOAD_WORKERS", str(DEFAULT_WORKERS)),
        "upload worker count",
    )
    max_pending = _positive_int(
        env.get("POCKETSTREAM_MAX_PENDING", str(DEFAULT_MAX_PENDING)),
        "pending upload limit",
    )

    timeout_raw = env.get("POCKETSTREAM_TIMEOUT", "")
    try:
        timeout = float(timeout_raw) if timeout_raw.strip() else DEFAULT_TIMEOUT
    except ValueError:
        raise ConfigError(f"Invalid request timeout: {timeout_raw!r}") from None
    if timeout <= 0:
        timeout = DEFAULT_TIMEOUT

    return StreamSession(
        token=token,
        source=source,
        destination=destination,
        segment_duration=duration,
        output_directory=output_directory,
        ffmpeg_upload=args.ffmpeg_upload or _env_flag(env, "POCKETSTREAM_FFMPEG_UPLOAD"),
        persist_errors=args.error_log,
        ffmpeg=_pick(args.ffmpeg, "FFMPEG", DEFAULT_FFMPEG) or DEFAULT_FFMPEG,
        upload_workers=workers,
        max_pending_uploads=max_pending,
        request_timeout=timeout,
    )


# ---------------------------------------------------------------------------
# ffmpeg command line
# ---------------------------------------------------------------------------


def _base_args(session: StreamSession) -> list[str]:
    return [
        "-listen", "1",
        "-i", f"rtmp://{session.source}",
        "-c", "copy",
        "-f", "hls",
    ]


def ffmpeg_push_args(session: StreamSession) -> list[str]:
    """ffmpeg arguments for the mode where ffmpeg POSTs every file itself."""

    # Without the trailing CRLF ffmpeg warns about the header on every request.
    return [
        *_base_args(session),
        "-headers", f"Authorization: {session.token}\r\n",
        "-method", "POST",
        "-hls_time", session.segment_duration,
        "-hls_list_size", "0",
        playlist_upload_url(session.destination),
    ]


def ffmpeg_file_args(session: StreamSession) -> list[str]:
    return [
        *_base_args(session),
        "-hls_time", session.segment_duration,
        "-hls_list_size", "0",
        str(session.playlist_path),
    ]


def _mask_header_value(value: str) -> str:
    name, sep, _secret = value.partition(":")
    if not sep:
        return "***"
    ending = "\r\n" if value.endswith("\r\n") else ""
    return f"{name}: ***{ending}"


def _mask_sensitive_args(args: Sequence[str]) -> list[str]:
    """Hide the value of every ``-headers`` argument."""

    masked = list(args)
    for index, arg in enumerate(masked[:-1]):
        if arg == "-headers":
            masked[index + 1] = _mask_header_value(masked[index + 1])
    return masked


def _printable_command(cmd: Sequence[str]) -> str:
    return subprocess.list2cmdline([arg.replace("\r\n", "\\r\\n") for arg in cmd])


# ---------------------------------------------------------------------------
# Process supervision
# ---------------------------------------------------------------------------


class FfmpegSupervisor:
    """Owns the ffmpeg child process for the lifetime of one session."""

    def __init__(
        self,
        cmd: Sequence[str],
        *,
        capture_stderr: bool,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self._cmd = list(cmd)
        self._capture_stderr = capture_stderr
        self._popen = popen
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()

    def launch(self) -> subprocess.Popen:
        """Start ffmpeg; ``OSError`` propagates to the caller."""

        if self._capture_stderr:
            kwargs = dict(
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        else:
            # Self-push mode: ffmpeg writes straight to our console.
            kwargs = dict(stdin=subprocess.DEVNULL)

        with self._lock:
            self._process = self._popen(self._cmd, **kwargs)
            LOGGER.info("ffmpeg started (PID %s)", self._process.pid)
            return self._process

    def wait(self) -> Optional[int]:
        with self._lock:
            proc = self._process
        if proc is None:
            return None
        return proc.wait()

    def terminate(self) -> None:
        with self._lock:
            proc = self._process

        if proc is None or proc.poll() is not None:
            return

        try:
            proc.terminate()
        except OSError as exc:
            LOGGER.warning("Cannot terminate ffmpeg: %s", exc)
            return

        try:
            proc.wait(timeout=TERMINATE_TIMEOUT)
        except subprocess.TimeoutExpired:
            LOGGER.warning("ffmpeg ignored SIGTERM; killing it")
            try:
                proc.kill()
            except OSError:
                pass
            else:
                proc.wait()


class SegmentTail:
    """Background reader that turns ffmpeg's stderr into upload jobs."""

    def __init__(
        self,
        stream,
        pool: DeliveryPool,
        echo: Optional[Callable[[str], None]] = print,
    ) -> None:
        self._stream = stream
        self._pool = pool
        self._echo = echo
        self._thread: Optional[threading.Thread] = None
        self.last_pending: Optional[str] = None
        self.dispatched = 0
        self.dropped: list[str] = []

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name="SegmentTail", daemon=True
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread:
            thread.join(timeout=timeout)

    def _dispatch(self, path: str) -> None:
        try:
            self._pool.submit(path)
        except RuntimeError:
            LOGGER.error("Delivery already stopped; dropping %s", path)
            self.dropped.append(path)
            return
        self.dispatched += 1

    def _run(self) -> None:
        try:
            self.last_pending = follow_segments(
                self._stream, self._dispatch, echo=self._echo
            )
        except (OSError, ValueError) as exc:
            LOGGER.error("Lost the ffmpeg diagnostic stream: %s", exc)


def _new_opener() -> urllib.request.OpenerDirector:
    return urllib.request.build_opener()


def run(
    session: StreamSession,
    *,
    client: Optional[IngestClient] = None,
    popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    probe: Callable[..., ProbeResult] = wait_for_listener,
    echo: Optional[Callable[[str], None]] = print,
) -> int:
    """Run one streaming session and return the process exit status."""

    if session.persist_errors and not _error_log_enabled():
        enable_error_log()
    LOGGER.info("%s", session.describe())

    if client is None:
        client = IngestClient(
            session.destination,
            session.token,
            opener=_new_opener(),
            timeout=session.request_timeout,
        )

    try:
        client.start_stream()
    except StartStreamError as exc:
        LOGGER.error("%s", exc)
        if exc.body:
            LOGGER.error("%s", exc.body)
        return 1

    if session.ffmpeg_upload:
        ffmpeg_args = ffmpeg_push_args(session)
    else:
        ffmpeg_args = ffmpeg_file_args(session)
        try:
            session.output_directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.error("Error creating output directory %s: %s", session.output_directory, exc)
            return 1

    cmd = [session.ffmpeg, *ffmpeg_args]
    LOGGER.info("Executing FFmpeg command: %s", _printable_command(_mask_sensitive_args(cmd)))

    supervisor = FfmpegSupervisor(
        cmd, capture_stderr=not session.ffmpeg_upload, popen=popen
    )
    try:
        proc = supervisor.launch()
    except OSError as exc:
        LOGGER.error("Failed to start ffmpeg (%s): %s", session.ffmpeg, exc)
        return 1

    pool: Optional[DeliveryPool] = None
    tail: Optional[SegmentTail] = None
    if not session.ffmpeg_upload:
        pool = DeliveryPool(
            client.upload,
            workers=session.upload_workers,
            max_pending=session.max_pending_uploads,
        )
        pool.start()
        tail = SegmentTail(proc.stderr, pool, echo=echo)
        tail.start()

    exited = False
    try:
        try:
            probe(session.source, DEFAULT_INTERVAL, DEFAULT_ATTEMPTS)
        except ProbeError as exc:
            LOGGER.error("%s", exc)
            supervisor.terminate()
            return 1

        LOGGER.info("PocketStream is ready")
        code = supervisor.wait()
        exited = True
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; stopping ffmpeg")
        supervisor.terminate()
        return 130
    finally:
        if tail is not None:
            # Once ffmpeg has exited its stderr ends, so the reader finishes
            # after queueing every remaining segment.
            tail.join(timeout=None if exited else TERMINATE_TIMEOUT)
        if pool is not None:
            _report_deliveries(pool, tail)

    if code:
        LOGGER.error("ffmpeg exited with code %s", code)
        return 1
    LOGGER.info("ffmpeg exited with code 0")
    return 0


def _report_deliveries(pool: DeliveryPool, tail: Optional[SegmentTail]) -> None:
    results = pool.close()
    failures = [result for result in results if not result.ok]
    LOGGER.info(
        "Uploaded %d file(s), %d failure(s) out of %d queued",
        len(results) - len(failures),
        len(failures),
        tail.dispatched if tail is not None else len(results),
    )
    for result in failures:
        LOGGER.debug("Failed upload %s: %s", result.path, result.error)
    if tail is not None and tail.dropped:
        LOGGER.error(
            "%d finalized segment(s) were never queued for upload", len(tail.dropped)
        )
    if tail is not None and tail.last_pending:
        LOGGER.info("Last segment %s was not delivered", tail.last_pending)


# ---------------------------------------------------------------------------
# Logging & CLI
# ---------------------------------------------------------------------------


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


def enable_error_log(path: Optional[Path] = None) -> Optional[logging.Handler]:
    """Append every ERROR record to ``path``; never fails the run."""

    path = ERROR_LOG_FILE if path is None else path
    try:
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as exc:
        LOGGER.warning("Cannot open error log %s: %s", path, exc)
        return None
    handler.setLevel(logging.ERROR)
    handler.setFormatter(logging.Formatter("%(message)s"))
    LOGGER.addHandler(handler)
    return handler


def _error_log_enabled(path: Optional[Path] = None) -> bool:
    target = str((ERROR_LOG_FILE if path is None else path).resolve())
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == target
        for handler in LOGGER.handlers
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pocketstream",
        description=f"{APP_NAME}: forward a local RTMP stream to an HLS ingest server.",
        epilog=(
            "FFmpeg dependency is necessary. Specifying ports is optional.\n\n"
            "Usage example:\n"
            "  pocketstream -t OBHWYICqacQK2yFQGdQNe72O752SBVti3sU5w-Ri8KM= "
            "--dest https://example.com"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-h", "-help", "--help", action="help", help="Display this help message"
    )
    parser.add_argument(
        "-t", "--token", metavar="BASE64",
        help="Authorization token to be passed in the headers",
    )
    parser.add_argument(
        "-src", "--source", metavar="HOST:PORT",
        help=f"RTMP source stream address (default: {DEFAULT_SOURCE})",
    )
    parser.add_argument(
        "-d", "--dest", "--domain", dest="destination", metavar="SCHEME://HOST:PORT",
        help="Destination domain where the server is running on",
    )
    parser.add_argument(
        "-s", "--segment", "--seg", metavar="SECONDS",
        help=f"Segment duration in seconds (default: {DEFAULT_SEGMENT_DURATION})",
    )
    parser.add_argument(
        "-o", "--output", metavar="DIR",
        help=f"Local output directory (default: {DEFAULT_OUTPUT_DIRECTORY})",
    )
    parser.add_argument(
        "-u", "--ffmpeg-upload", action="store_true",
        help="Let ffmpeg upload segments and playlist itself",
    )
    parser.add_argument(
        "-e", "--error-log", action="store_true",
        help=f"Also append error messages to {ERROR_LOG_FILE}",
    )
    parser.add_argument("--ffmpeg", metavar="PATH", help="ffmpeg executable (default: ffmpeg)")
    parser.add_argument("--workers", metavar="N", help="Parallel uploads in local-file mode")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> tuple[argparse.Namespace, list[str]]:
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        parser.print_help()
        raise SystemExit(0)
    return parser.parse_known_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args, unknown = parse_args(argv)
    configure_logging(args.verbose)

    for extra in unknown:
        LOGGER.warning("Unrecognized flag/argument: %s", extra)

    if args.error_log:
        enable_error_log()

    try:
        session = build_session(args)
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        return 1

    return run(session)


if __name__ == "__main__":
    raise SystemExit(main())
