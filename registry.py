"""Immutable, validated view of the configured devices and their dependencies.

A device that carries a hardware (MAC) address and remote-control
credentials is a controllable server. A device with only one of the two,
or with dependencies but neither, is still treated as a server by the
resolver but is never dispatched. Everything else is a plain machine.
"""

from __future__ import annotations

import graphlib
import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from errors import ConfigError, UnknownDeviceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """How to open a remote-control (SSH) session to a server."""
    username: str
    password: Optional[str] = None
    key_file: Optional[str] = None
    passphrase: Optional[str] = None
    port: int = 22


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    ip: str
    timeout: float                        # Seconds a reachability record stays fresh
    mac: Optional[str] = None
    credentials: Optional[Credentials] = None

    @property
    def is_controllable(self) -> bool:
        return self.mac is not None and self.credentials is not None

    def __str__(self) -> str:
        return f"{self.name} ({self.ip})"


class Registry:
    """Devices plus the acyclic server -> device dependency graph.

    Build it with Registry.load() (or from_config()); the constructor
    assumes its inputs were already validated. A reload replaces the whole
    registry object.
    """

    def __init__(self, devices: dict[str, Device],
                 dependencies: dict[str, frozenset[str]],
                 order: tuple[str, ...]):
        self._devices = devices
        self._dependencies = dependencies
        self._order = order
        self._servers = tuple(d for d in order if self._declares_server(d))

    # ---- Construction ----

    @classmethod
    def load(cls, devices: Iterable[Device],
             dependencies: Mapping[str, Iterable[str]]) -> Registry:
        """Validate devices and dependencies, raising ConfigError on any structural problem."""
        by_id: dict[str, Device] = {}
        by_ip: dict[str, str] = {}
        for device in devices:
            if device.id in by_id:
                raise ConfigError(f"duplicate device id '{device.id}'")
            if device.ip in by_ip:
                raise ConfigError(
                    f"devices '{by_ip[device.ip]}' and '{device.id}' share the IP address {device.ip}")
            by_id[device.id] = device
            by_ip[device.ip] = device.id
        if not by_id:
            raise ConfigError("no devices to monitor")

        edges: dict[str, frozenset[str]] = {}
        for server_id, deps in dependencies.items():
            if server_id not in by_id:
                raise ConfigError(f"dependencies reference unknown server '{server_id}'")
            deps = frozenset(deps)
            unknown = sorted(d for d in deps if d not in by_id)
            if unknown:
                raise ConfigError(
                    f"server '{server_id}' depends on unknown device(s): {', '.join(unknown)}")
            if server_id in deps:
                raise ConfigError(f"server '{server_id}' depends on itself")
            edges[server_id] = deps

        order = cls._topological_order(by_id, edges)
        registry = cls(by_id, edges, order)

        for server_id in registry.servers():
            device = by_id[server_id]
            if not device.is_controllable:
                logger.warning(
                    "%s is not controllable (needs both a MAC address and credentials); "
                    "it will be monitored but never woken up or shut down", device)
        return registry

    @classmethod
    def from_config(cls, config) -> Registry:
        """Build a registry from a validated config.Configuration."""
        devices = []
        for device_id, dc in config.devices.items():
            credentials = None
            if dc.credentials is not None:
                key = dc.credentials.private_key
                credentials = Credentials(
                    username=dc.credentials.username,
                    password=dc.credentials.password,
                    key_file=key.file if key else None,
                    passphrase=key.passphrase if key else None,
                    port=dc.credentials.port,
                )
            devices.append(Device(
                id=device_id,
                name=dc.name,
                ip=str(dc.ip),
                timeout=dc.timeout,
                mac=dc.mac,
                credentials=credentials,
            ))
        return cls.load(devices, config.dependencies)

    @staticmethod
    def _topological_order(devices: dict[str, Device],
                           edges: dict[str, frozenset[str]]) -> tuple[str, ...]:
        # Sorted insertion keeps the order deterministic across runs
        sorter = graphlib.TopologicalSorter()
        for device_id in sorted(devices):
            sorter.add(device_id, *sorted(edges.get(device_id, ())))
        try:
            return tuple(sorter.static_order())
        except graphlib.CycleError as e:
            cycle = e.args[1] if len(e.args) > 1 else []
            raise ConfigError(
                f"dependency cycle detected: {' -> '.join(cycle)}") from e

    # ---- Queries ----

    def topological_order(self) -> tuple[str, ...]:
        """Every device id, each one after all the devices it depends on."""
        return self._order

    def dependencies_of(self, server_id: str) -> frozenset[str]:
        self.device(server_id)
        return self._dependencies.get(server_id, frozenset())

    def is_server(self, device_id: str) -> bool:
        self.device(device_id)
        return self._declares_server(device_id)

    def is_controllable(self, device_id: str) -> bool:
        return self.device(device_id).is_controllable

    def servers(self) -> tuple[str, ...]:
        """Server ids in topological order."""
        return self._servers

    def device(self, device_id: str) -> Device:
        try:
            return self._devices[device_id]
        except KeyError:
            raise UnknownDeviceError(device_id) from None

    def devices(self) -> list[Device]:
        return [self._devices[d] for d in self._order]

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def _declares_server(self, device_id: str) -> bool:
        device = self._devices[device_id]
        return (device.mac is not None
                or device.credentials is not None
                or device_id in self._dependencies)
