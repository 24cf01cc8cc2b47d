"""Tests for the desired power state resolution."""

import pytest

from device_state import OverrideFlags, PowerState
from registry import Registry
from resolver import resolve

from conftest import machine, server

ON, OFF = PowerState.ON, PowerState.OFF


def test_three_level_chain_propagates(chain_registry):
    desired = resolve(chain_registry, {"mach1": True}, {})
    assert desired == {"srvA": ON, "srvB": ON, "idle": OFF}


def test_chain_goes_off_with_its_machine(chain_registry):
    desired = resolve(chain_registry, {"mach1": False}, {})
    assert desired == {"srvA": OFF, "srvB": OFF, "idle": OFF}


def test_missing_reachability_counts_as_unreachable(chain_registry):
    assert resolve(chain_registry, {}, {})["srvA"] is OFF


def test_server_reachability_is_ignored_for_dependents(chain_registry):
    # srvA answering pings does not keep srvB on; only srvA's decision does
    desired = resolve(chain_registry, {"mach1": False, "srvA": True}, {})
    assert desired["srvB"] is OFF


def test_any_dependency_is_enough():
    registry = Registry.load(
        [machine("m1", "10.0.0.1"), machine("m2", "10.0.0.2"), server("s", "10.0.0.3")],
        {"s": ["m1", "m2"]},
    )
    assert resolve(registry, {"m1": False, "m2": True}, {})["s"] is ON
    assert resolve(registry, {"m1": False, "m2": False}, {})["s"] is OFF


@pytest.mark.parametrize("reachable", [True, False])
@pytest.mark.parametrize("always_on", [True, False])
def test_always_off_wins(chain_registry, reachable, always_on):
    overrides = {"srvA": OverrideFlags(always_on=always_on, always_off=True)}
    desired = resolve(chain_registry, {"mach1": reachable}, overrides)
    assert desired["srvA"] is OFF
    # and it propagates to the dependent server
    assert desired["srvB"] is OFF


@pytest.mark.parametrize("reachable", [True, False])
def test_always_on(chain_registry, reachable):
    overrides = {"srvA": OverrideFlags(always_on=True)}
    desired = resolve(chain_registry, {"mach1": reachable}, overrides)
    assert desired["srvA"] is ON
    assert desired["srvB"] is ON


def test_always_on_without_dependencies(chain_registry):
    desired = resolve(chain_registry, {}, {"idle": OverrideFlags(always_on=True)})
    assert desired["idle"] is ON


@pytest.mark.parametrize("reachable", [{}, {"mach1": True}, {"mach1": True, "idle": True}])
def test_no_dependencies_resolves_off(chain_registry, reachable):
    assert resolve(chain_registry, reachable, {})["idle"] is OFF


def test_only_servers_are_resolved(chain_registry):
    assert "mach1" not in resolve(chain_registry, {"mach1": True}, {})
