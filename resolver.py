"""Power state resolver: reachability + overrides -> desired server states.

Pure function, evaluated once per tick in topological order so that a
server which depends on another server sees that server's fresh decision
within the same pass:

  1. always_off            -> OFF (wins over everything, always_on included)
  2. always_on             -> ON
  3. no dependencies       -> OFF
  4. any dependency "up"   -> ON, where a machine is up when it is currently
                              reachable and a server is up when it resolved ON
  5. otherwise             -> OFF
"""

from __future__ import annotations

from typing import Mapping, TYPE_CHECKING

from device_state import OverrideFlags, PowerState

if TYPE_CHECKING:
    from registry import Registry

_NO_OVERRIDE = OverrideFlags()


def resolve(registry: Registry, reachable: Mapping[str, bool],
            overrides: Mapping[str, OverrideFlags]) -> dict[str, PowerState]:
    """Compute the desired power state of every server.

    Args:
        registry: device registry providing the order and the dependency graph
        reachable: staleness-adjusted reachability per device id (missing = unreachable)
        overrides: override flags per server id (missing = no flags)
    """
    desired: dict[str, PowerState] = {}
    for device_id in registry.topological_order():
        if not registry.is_server(device_id):
            continue
        flags = overrides.get(device_id, _NO_OVERRIDE)
        if flags.always_off:
            desired[device_id] = PowerState.OFF
        elif flags.always_on:
            desired[device_id] = PowerState.ON
        else:
            deps = registry.dependencies_of(device_id)
            up = any(_dependency_is_up(registry, d, reachable, desired) for d in deps)
            desired[device_id] = PowerState.ON if up else PowerState.OFF
    return desired


def _dependency_is_up(registry: Registry, device_id: str,
                      reachable: Mapping[str, bool],
                      desired: Mapping[str, PowerState]) -> bool:
    if registry.is_server(device_id):
        # Already resolved: topological order puts dependencies first
        return desired[device_id] is PowerState.ON
    return reachable.get(device_id, False)
