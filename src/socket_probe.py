"""Readiness checks based on the operating system socket table."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

import psutil

LOGGER = logging.getLogger("pocketstream.probe")

DEFAULT_INTERVAL = 0.25
DEFAULT_ATTEMPTS = 10


class ProbeError(RuntimeError):
    """Raised when the socket table cannot be read at all."""


@dataclass(frozen=True)
class ProbeResult:
    confirmed: bool
    attempts: int
    elapsed: float


def loopback_variants(address: str) -> tuple[str, str]:
    """Return the IPv4 and IPv6 spellings of ``address``.

    Only the first ``localhost`` is rewritten, so ``localhost:9000`` becomes
    ``127.0.0.1:9000`` and ``::1:9000``. Any other host is returned as is.
    """

    return (
        address.replace("localhost", "127.0.0.1", 1),
        address.replace("localhost", "::1", 1),
    )


def _format_addr(addr: Sequence) -> Optional[str]:
    # psutil reports an empty tuple for sockets without a remote peer.
    if not addr:
        return None
    return f"{addr[0]}:{addr[1]}"


def _matches(entries: Iterable, wanted: str) -> bool:
    for entry in entries:
        if _format_addr(entry.laddr) == wanted:
            return True
        if _format_addr(entry.raddr) == wanted:
            return True
    return False


def _read_table(
    connections: Callable[..., Iterable], kind: str
) -> list:
    try:
        return list(connections(kind=kind))
    except (psutil.Error, OSError) as exc:
        raise ProbeError(f"cannot read {kind} socket table: {exc}") from exc


def wait_for_listener(
    address: str,
    interval: float = DEFAULT_INTERVAL,
    attempts: int = DEFAULT_ATTEMPTS,
    *,
    connections: Callable[..., Iterable] = psutil.net_connections,
    sleeper: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ProbeResult:
    """Poll the TCP socket tables until ``address`` shows up.

    Both the ``tcp4`` and ``tcp6`` tables from :func:`psutil.net_connections`
    are inspected on every attempt; an entry matches when either its local or
    its remote endpoint equals the address. The function returns as soon as a
    match is found and never performs more than ``attempts`` lookups.

    A missing entry is not an error: some platforms hide sockets from
    unprivileged users, so the caller is expected to continue. A table that
    cannot be read raises :class:`ProbeError`.
    """

    address_v4, address_v6 = loopback_variants(address)
    started = clock()

    for attempt in range(1, attempts + 1):
        found_v4 = _matches(_read_table(connections, "tcp4"), address_v4)
        found_v6 = _matches(_read_table(connections, "tcp6"), address_v6)

        if found_v4 or found_v6:
            elapsed = clock() - started
            LOGGER.info(
                "Confirmed server listening at %s after %.3fs", address, elapsed
            )
            return ProbeResult(True, attempt, elapsed)

        if attempt < attempts:
            sleeper(interval)

    elapsed = clock() - started
    LOGGER.error(
        "Failed to determine whether address %s is claimed after %d attempts",
        address,
        attempts,
    )
    return ProbeResult(False, attempts, elapsed)
