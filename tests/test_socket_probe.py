import importlib.util
import sys
from pathlib import Path
from types import SimpleNamespace

import psutil
import pytest

MODULE_PATH = Path(__file__).resolve().parents[1] / "src" / "socket_probe.py"
SPEC = importlib.util.spec_from_file_location("_socket_probe_test", MODULE_PATH)
assert SPEC and SPEC.loader
module = importlib.util.module_from_spec(SPEC)
sys.modules["_socket_probe_test"] = module
SPEC.loader.exec_module(module)


def addr(ip: str, port: int) -> tuple:
    # psutil addresses are (ip, port) named tuples
    return (ip, port)


def sock(laddr, raddr=()):
    return SimpleNamespace(laddr=laddr, raddr=raddr, status="LISTEN")


class FakeClock:
    def __init__(self) -> None:
        self.current = 0.0

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeTables:
    """Answers net_connections(kind=...) from per-attempt snapshots."""

    def __init__(self, snapshots):
        self.snapshots = snapshots
        self.calls: list[str] = []

    def __call__(self, kind: str):
        self.calls.append(kind)
        attempt = (len(self.calls) - 1) // 2
        snapshot = self.snapshots[min(attempt, len(self.snapshots) - 1)]
        return snapshot.get(kind, [])


def test_loopback_variants_rewrite_localhost():
    assert module.loopback_variants("localhost:9000") == ("127.0.0.1:9000", "::1:9000")
    assert module.loopback_variants("10.0.0.5:1935") == ("10.0.0.5:1935", "10.0.0.5:1935")


def test_confirms_on_first_attempt():
    tables = FakeTables([{"tcp4": [sock(addr("127.0.0.1", 9000))]}])
    sleeps: list[float] = []

    result = module.wait_for_listener(
        "localhost:9000",
        0.25,
        10,
        connections=tables,
        sleeper=sleeps.append,
        clock=FakeClock(),
    )

    assert result.confirmed is True
    assert result.attempts == 1
    assert sleeps == []
    assert tables.calls == ["tcp4", "tcp6"]


def test_matches_ipv6_loopback_entry():
    tables = FakeTables([{"tcp6": [sock(addr("::1", 9000))]}])

    result = module.wait_for_listener(
        "localhost:9000", connections=tables, sleeper=lambda _s: None, clock=FakeClock()
    )

    assert result.confirmed is True


def test_matches_remote_endpoint_of_connected_socket():
    tables = FakeTables(
        [{"tcp4": [sock(addr("127.0.0.1", 53122), addr("127.0.0.1", 9000))]}]
    )

    result = module.wait_for_listener(
        "localhost:9000", connections=tables, sleeper=lambda _s: None, clock=FakeClock()
    )

    assert result.confirmed is True


def test_retries_until_socket_appears():
    clock = FakeClock()
    sleeps: list[float] = []

    def sleeper(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    tables = FakeTables(
        [
            {},
            {"tcp4": [sock(addr("127.0.0.1", 8080))]},
            {"tcp4": [sock(addr("127.0.0.1", 9000))]},
        ]
    )

    result = module.wait_for_listener(
        "localhost:9000", 0.25, 10, connections=tables, sleeper=sleeper, clock=clock
    )

    assert result.confirmed is True
    assert result.attempts == 3
    assert sleeps == [0.25, 0.25]
    assert result.elapsed == pytest.approx(0.5)


def test_gives_up_after_configured_attempts():
    tables = FakeTables([{}])
    sleeps: list[float] = []

    result = module.wait_for_listener(
        "localhost:9000",
        0.25,
        10,
        connections=tables,
        sleeper=sleeps.append,
        clock=FakeClock(),
    )

    assert result.confirmed is False
    assert result.attempts == 10
    assert len(tables.calls) == 20
    assert len(sleeps) == 9


def test_unreadable_socket_table_raises():
    def denied(kind: str):
        raise psutil.AccessDenied()

    with pytest.raises(module.ProbeError):
        module.wait_for_listener(
            "localhost:9000", connections=denied, sleeper=lambda _s: None
        )
