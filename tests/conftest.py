"""Shared fixtures and fakes for the home monitor tests.

The fakes replace everything that touches the network: a scripted pinger
(answers by IP address), recording wake/shutdown controls and a clock the
test advances by hand.
"""

import asyncio
import copy

import pytest

from config import parse_config
from errors import ProbeError, TransportError
from registry import Credentials, Device, Registry


class FakeClock:
    """Monotonic clock advanced explicitly by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakePinger:
    """Answers pings for the IPs in ``up``; raises ProbeError for ``errors``."""

    def __init__(self, up=(), errors=(), delay: float = 0.0):
        self.up = set(up)
        self.errors = set(errors)
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def ping(self, ip: str, timeout: float) -> bool:
        self.calls.append(ip)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if ip in self.errors:
                raise ProbeError(ip, "network unreachable")
            return ip in self.up
        finally:
            self.active -= 1


class FakeWaker:
    """Records wake-ups; the first ``failures`` calls raise TransportError."""

    def __init__(self, failures: int = 0):
        self.calls = []
        self.macs = []
        self.failures = failures

    async def wakeup(self, device: Device):
        self.calls.append(device.id)
        self.macs.append(device.mac)
        if self.failures:
            self.failures -= 1
            raise TransportError(f"failed to send wake-on-lan packet to {device}")


class FakeShutdowner:
    """Records shutdowns; fails ``failures`` times, or always with ``error``."""

    def __init__(self, failures: int = 0, error: Exception = None, delay: float = 0.0):
        self.calls = []
        self.failures = failures
        self.error = error
        self.delay = delay

    async def shutdown(self, device: Device):
        self.calls.append(device.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.failures:
            self.failures -= 1
            raise TransportError(f"SSH session to {device} failed: connection refused")


def server(device_id: str, ip: str, timeout: float = 60.0,
           mac: str = "aa:bb:cc:dd:ee:ff", username: str = "foo") -> Device:
    credentials = Credentials(username=username, password="bar") if username else None
    return Device(id=device_id, name=device_id.upper(), ip=ip, timeout=timeout,
                  mac=mac, credentials=credentials)


def machine(device_id: str, ip: str, timeout: float = 300.0) -> Device:
    return Device(id=device_id, name=device_id.upper(), ip=ip, timeout=timeout)


CONFIG = {
    "network": {"interface": "", "ping": {"interval": 6, "timeout": 2}},
    "api": {},
    "devices": {
        "srv1": {
            "name": "My Server",
            "ip": "192.168.1.1",
            "mac": "aa:bb:cc:dd:ee:ff",
            "timeout": 60,
            "credentials": {"username": "foo", "password": "bar"},
        },
        "mach1": {"name": "My Machine", "ip": "192.168.1.2", "timeout": 300},
    },
    "dependencies": {"srv1": ["mach1"]},
    "dispatch": {"backoff": 0, "confirm_poll": 0.01},
}

SRV1_IP = "192.168.1.1"
MACH1_IP = "192.168.1.2"


@pytest.fixture
def config_data():
    """A fresh, mutable copy of the srv1/mach1 configuration."""
    return copy.deepcopy(CONFIG)


@pytest.fixture
def config(config_data):
    return parse_config(config_data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pinger():
    return FakePinger()


@pytest.fixture
def waker():
    return FakeWaker()


@pytest.fixture
def shutdowner():
    return FakeShutdowner()


@pytest.fixture
def chain_registry():
    """mach1 <- srvA <- srvB, plus an idle server without dependencies."""
    return Registry.load(
        [
            machine("mach1", "10.0.0.1"),
            server("srvA", "10.0.0.10", mac="aa:bb:cc:dd:ee:01"),
            server("srvB", "10.0.0.11", mac="aa:bb:cc:dd:ee:02"),
            server("idle", "10.0.0.12", mac="aa:bb:cc:dd:ee:03"),
        ],
        {"srvA": ["mach1"], "srvB": ["srvA"]},
    )
