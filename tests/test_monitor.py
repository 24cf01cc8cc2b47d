"""Tests for reachability probing and staleness."""

from unittest.mock import patch

import pytest

from device_state import ReachabilityRecord
from errors import ProbeError
from monitor import PingCommand, ReachabilityMonitor
from registry import Registry

from conftest import FakePinger, machine, server


@pytest.fixture
def registry():
    return Registry.load(
        [machine("mach1", "10.0.0.1", timeout=300),
         server("srv1", "10.0.0.2", timeout=60)],
        {"srv1": ["mach1"]},
    )


def _monitor(registry, pinger, clock, **kwargs):
    return ReachabilityMonitor(registry, pinger, timeout=2, clock=clock, **kwargs)


class TestStaleness:

    def test_fresh_record_is_reachable(self):
        record = ReachabilityRecord("m", reachable=True, last_seen=100.0)
        assert record.is_reachable_at(100.0 + 30, timeout=30)

    def test_stale_record_is_unreachable(self):
        record = ReachabilityRecord("m", reachable=True, last_seen=100.0)
        assert not record.is_reachable_at(100.0 + 30.001, timeout=30)

    def test_never_seen(self):
        assert not ReachabilityRecord("m").is_reachable_at(0.0, timeout=30)

    def test_unreachable_flag_wins(self):
        record = ReachabilityRecord("m", reachable=False, last_seen=100.0)
        assert not record.is_reachable_at(100.0, timeout=30)


class TestProbing:

    @pytest.mark.asyncio
    async def test_success_updates_last_seen(self, registry, clock):
        pinger = FakePinger(up={"10.0.0.1"})
        monitor = _monitor(registry, pinger, clock)
        results = await monitor.probe_all()
        assert results == {"mach1": True, "srv1": False}
        record = monitor.record("mach1")
        assert record.reachable
        assert record.last_seen == clock.now
        assert record.last_seen_date is not None
        assert monitor.snapshot() == {"mach1": True, "srv1": False}

    @pytest.mark.asyncio
    async def test_failure_preserves_last_seen(self, registry, clock):
        pinger = FakePinger(up={"10.0.0.1"})
        monitor = _monitor(registry, pinger, clock)
        await monitor.probe_all()
        seen = clock.now
        clock.advance(6)
        pinger.up.clear()
        await monitor.probe_all()
        record = monitor.record("mach1")
        assert not record.reachable
        assert record.last_seen == seen
        assert not monitor.is_reachable("mach1")

    @pytest.mark.asyncio
    async def test_probe_error_only_degrades_one_device(self, registry, clock):
        pinger = FakePinger(up={"10.0.0.2"}, errors={"10.0.0.1"})
        monitor = _monitor(registry, pinger, clock)
        results = await monitor.probe_all()
        assert results == {"mach1": False, "srv1": True}

    @pytest.mark.asyncio
    async def test_seen_since(self, registry, clock):
        monitor = _monitor(registry, FakePinger(up={"10.0.0.1"}), clock)
        await monitor.probe_all()
        probed = clock.now
        assert monitor.seen_since("mach1", probed - 1)
        assert not monitor.seen_since("mach1", probed)
        assert not monitor.seen_since("srv1", probed - 1)
        clock.advance(6)
        await monitor.probe_all()
        assert monitor.seen_since("mach1", probed)

    @pytest.mark.asyncio
    async def test_staleness_applies_between_ticks(self, registry, clock):
        monitor = _monitor(registry, FakePinger(up={"10.0.0.2"}), clock)
        await monitor.probe_all()
        assert monitor.is_reachable("srv1")
        clock.advance(61)
        assert not monitor.is_reachable("srv1")
        assert monitor.snapshot()["srv1"] is False

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, clock):
        devices = [machine(f"m{i}", f"10.0.2.{i}") for i in range(10)]
        registry = Registry.load(devices, {})
        pinger = FakePinger(up={d.ip for d in devices}, delay=0.01)
        monitor = _monitor(registry, pinger, clock, workers=3)
        results = await monitor.probe_all()
        assert all(results.values())
        assert len(pinger.calls) == 10
        assert pinger.max_active <= 3

    @pytest.mark.asyncio
    async def test_transitions_are_reported(self, registry, clock):
        changes = []
        pinger = FakePinger(up={"10.0.0.1"})
        monitor = _monitor(registry, pinger, clock,
                           on_change=lambda device, record: changes.append(
                               (device.id, record.reachable)))
        await monitor.probe_all()
        await monitor.probe_all()
        assert changes == [("mach1", True)]
        pinger.up.clear()
        await monitor.probe_all()
        assert changes == [("mach1", True), ("mach1", False)]
        assert monitor.probe_count == 3


class TestPingCommand:

    def test_ipv4(self):
        assert PingCommand().command("192.168.1.2", 2) == [
            "ping", "-4", "-n", "-q", "-c", "1", "-W", "2", "192.168.1.2"]

    def test_ipv6_with_interface_and_fractional_timeout(self):
        cmd = PingCommand("eth0").command("fe80::1", 0.5)
        assert cmd[:2] == ["ping", "-6"]
        assert cmd[cmd.index("-W") + 1] == "1"
        assert cmd[-3:] == ["-I", "eth0", "fe80::1"]

    @pytest.mark.asyncio
    async def test_missing_binary_names_the_address(self):
        with patch("monitor.asyncio.create_subprocess_exec",
                   side_effect=FileNotFoundError("ping")):
            with pytest.raises(ProbeError) as exc:
                await PingCommand().ping("192.168.1.2", 2)
        assert exc.value.target == "192.168.1.2"
        assert "cannot run ping" in str(exc.value)
