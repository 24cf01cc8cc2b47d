"""Exception taxonomy for the home monitor.

Only ConfigError is fatal (raised at load time). Probe and action errors
are isolated to the device or server they concern.
"""


class HomeMonitorError(Exception):
    """Base class for every error raised by the home monitor."""


class ConfigError(HomeMonitorError):
    """Invalid configuration: unknown id, dependency cycle, malformed entry."""


class ProbeError(HomeMonitorError):
    """A single liveness probe failed or timed out."""

    def __init__(self, target: str, message: str):
        # target is the probed address, not a device id
        super().__init__(f"{target}: {message}")
        self.target = target


class UnknownDeviceError(HomeMonitorError):
    """The requested device or server id is not configured."""

    kind = "unknown_device"

    def __init__(self, device_id: str):
        super().__init__(f"unknown device '{device_id}'")
        self.device_id = device_id


class ActionError(HomeMonitorError):
    """A wake or shutdown action could not be carried out."""

    kind = "action_failed"

    def __init__(self, server_id: str, message: str):
        super().__init__(f"{server_id}: {message}")
        self.server_id = server_id


class NotControllable(ActionError):
    """The device lacks a hardware address or credentials."""

    kind = "not_controllable"


class WakeTimeout(ActionError):
    """The server did not become reachable within the wake retry budget."""

    kind = "wake_timeout"


class ShutdownFailed(ActionError):
    """The remote shutdown command could not be delivered."""

    kind = "shutdown_failed"


class TransportError(HomeMonitorError):
    """Network-level failure while delivering an action; worth retrying."""
