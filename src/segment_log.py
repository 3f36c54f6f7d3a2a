"""Segment discovery from ffmpeg's HLS muxer diagnostics.

ffmpeg never reports that a segment is complete. What it does log, on
stderr, is the moment the HLS muxer opens the next output file::

    [hls @ 0x5581c8a3f2c0] Opening '/srv/live/stream3.ts' for writing

A segment is therefore considered finalized once a *later* file has been
opened. The playlist is rewritten through ``stream.m3u8.tmp`` and renamed,
so the ``.tmp`` suffix is dropped from every observed path.
"""

from __future__ import annotations

import re
from typing import Callable, Iterable, Optional

OPENING_MARKER = "[hls @"
TEMP_SUFFIX = ".tmp"

_OPENING_RE = re.compile(r"Opening\s+'([^']*)'")


def parse_opened_path(line: str) -> Optional[str]:
    """Return the path opened by the HLS muxer, or ``None``."""

    index = line.find(OPENING_MARKER)
    if index == -1:
        return None

    match = _OPENING_RE.search(line, index + len(OPENING_MARKER))
    if not match or not match.group(1):
        return None

    path = match.group(1)
    if path.endswith(TEMP_SUFFIX):
        path = path[: -len(TEMP_SUFFIX)]
    return path


class PendingSegment:
    """Holds the newest observed path until a later one supersedes it."""

    def __init__(self) -> None:
        self._path: Optional[str] = None

    @property
    def path(self) -> Optional[str]:
        return self._path

    def observe(self, path: str) -> Optional[str]:
        """Record ``path`` and return the previously pending one, if any."""

        finalized = self._path
        self._path = path
        return finalized


def follow_segments(
    lines: Iterable[str],
    dispatch: Callable[[str], None],
    *,
    echo: Optional[Callable[[str], None]] = None,
) -> Optional[str]:
    """Consume diagnostic ``lines`` and dispatch every finalized path.

    Each line is passed to ``echo`` first (when given). The path still
    pending when ``lines`` is exhausted is returned; it is never dispatched.
    """

    pending = PendingSegment()
    for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if echo is not None:
            echo(line)

        path = parse_opened_path(line)
        if path is None:
            continue

        finalized = pending.observe(path)
        if finalized is not None:
            dispatch(finalized)

    return pending.path
