"""Reconciliation loop and the operations exposed to the API and CLI.

Once per ping interval HomeMonitor probes every device, re-reads the
override flags, resolves the desired state of every server and hands the
result to the dispatcher. Probing happens outside the lock; the
resolve/dispatch phase, every override mutation and the registration of
every manual action go through the same asyncio.Lock, so they never
interleave on the same server.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from config import Configuration
from controls import SshShutdown, WakeOnLan
from device_state import PowerState, ReachabilityRecord, ServerState
from dispatcher import ActionDispatcher
from errors import UnknownDeviceError
from monitor import PingCommand, ReachabilityMonitor
from overrides import OverrideStore
from registry import Device, Registry
from resolver import resolve

logger = logging.getLogger(__name__)


class HomeMonitor:
    """Keeps servers powered according to the reachability of their dependencies."""

    def __init__(self, config: Configuration,
                 registry: Optional[Registry] = None,
                 pinger=None, waker=None, shutdowner=None,
                 overrides: Optional[OverrideStore] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.registry = registry or Registry.from_config(config)
        self.clock = clock
        ping = config.network.ping
        dispatch = config.dispatch
        self.interval = ping.interval
        self.grace = dispatch.grace

        self.monitor = ReachabilityMonitor(
            self.registry,
            pinger or PingCommand(config.network.interface),
            timeout=ping.timeout,
            workers=ping.workers,
            clock=clock,
            on_change=self._on_device_change,
        )
        root = config.api.files.root
        self.overrides = overrides or OverrideStore(root)
        self.dispatcher = ActionDispatcher(
            self.registry,
            waker or WakeOnLan(),
            shutdowner or SshShutdown(timeout=dispatch.ssh_timeout),
            seen_since=self.monitor.seen_since,
            debounce=config.debounce,
            wake_attempts=dispatch.wake_attempts,
            shutdown_attempts=dispatch.shutdown_attempts,
            backoff=dispatch.backoff,
            backoff_max=dispatch.backoff_max,
            confirm_poll=dispatch.confirm_poll,
            clock=clock,
            on_change=self._on_server_change,
        )

        self._desired: dict[str, PowerState] = {}
        self._lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._listeners: list[Callable[[dict], None]] = []
        self.running = False
        self.tick_count = 0

    # ---- Events ----

    def subscribe(self, listener: Callable[[dict], None]):
        """Register a callback receiving every state change event."""
        self._listeners.append(listener)

    def _publish(self, event: str, data: dict):
        message = {"event": event, "data": data,
                   "timestamp": datetime.now(timezone.utc).isoformat()}
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.warning("event listener failed for %s", event, exc_info=True)

    def _on_device_change(self, device: Device, record: ReachabilityRecord):
        self._publish("device", self._device_status(device, record, self.clock()))

    def _on_server_change(self, state: ServerState):
        self._publish("server", self.server_summary(state.server_id))

    # ---- Reconciliation loop ----

    async def run_once(self) -> dict[str, PowerState]:
        """One tick: probe, then resolve and dispatch under the lock."""
        await self.monitor.probe_all()
        async with self._lock:
            now = self.clock()
            servers = self.registry.servers()
            overrides = self.overrides.refresh(servers)
            reachable = self.monitor.snapshot(now)
            if self.tick_count == 0:
                # Initial belief: a server answering pings is on
                self.dispatcher.seed({
                    sid: PowerState.ON if reachable[sid] else PowerState.OFF for sid in servers
                })
            desired = resolve(self.registry, reachable, overrides)
            for sid, state in desired.items():
                if self._desired.get(sid) is not state:
                    logger.info("%s should be %s", self.registry.device(sid), state.value)
            self._desired = desired
            self.dispatcher.reconcile(desired, now)
            self.tick_count += 1
        return desired

    async def run(self):
        """Tick every ping interval until stop() is called."""
        self.running = True
        self._stopping.clear()
        logger.info("monitoring %d device(s) every %.1fs...", len(self.registry), self.interval)
        try:
            while not self._stopping.is_set():
                await self._tick_until_stopped()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stopping.wait(), self.interval)
        finally:
            # In-flight wake/shutdown actions are allowed to finish
            await self.dispatcher.drain()
            self.running = False
            logger.info("monitoring stopped")

    async def _tick_until_stopped(self):
        tick = asyncio.create_task(self.run_once(), name="tick")
        stopper = asyncio.create_task(self._stopping.wait(), name="stop-wait")
        try:
            await asyncio.wait({tick, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if not tick.done():
            logger.info("termination requested, finishing current tick...")
            done, _ = await asyncio.wait({tick}, timeout=self.grace)
            if not done:
                logger.warning("abandoning current tick after %.1fs", self.grace)
                tick.cancel()
        result = (await asyncio.gather(tick, return_exceptions=True))[0]
        if isinstance(result, Exception):
            logger.error("tick failed: %s", result, exc_info=result)

    def stop(self):
        """Request termination; the current tick finishes (or is abandoned) first."""
        if not self._stopping.is_set():
            logger.info("stopping...")
            self._stopping.set()

    # ---- Status ----

    def get_config(self) -> dict[str, Any]:
        return self.config.redacted()

    def get_status(self) -> dict[str, Any]:
        """Per-device reachability plus per-server desired/actual state."""
        now = self.clock()
        records = {r.device_id: r for r in self.monitor.records()}
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "devices": [self._device_status(d, records[d.id], now)
                        for d in self.registry.devices()],
            "servers": {sid: self.server_summary(sid) for sid in self.registry.servers()},
        }

    def get_server_status(self, server_id: str) -> dict[str, Any]:
        self._require_server(server_id)
        now = self.clock()
        device = self.registry.device(server_id)
        status = self.server_summary(server_id)
        status["server"] = self._device_status(device, self.monitor.record(server_id), now)
        status["devices"] = [
            self._device_status(self.registry.device(d), self.monitor.record(d), now)
            for d in sorted(self.registry.dependencies_of(server_id))
        ]
        return status

    def server_summary(self, server_id: str) -> dict[str, Any]:
        device = self.registry.device(server_id)
        flags = self.overrides.snapshot().get(server_id) or self.overrides.read(server_id)
        desired = self._desired.get(server_id)
        summary = {
            "id": server_id,
            "name": device.name,
            "controllable": device.is_controllable,
            "desired": desired.value if desired else None,
            "actual": None,
            "phase": None,
            "degraded": False,
            "last_error": None,
            "last_error_kind": None,
            "last_action": None,
            "last_action_date": None,
            "always_on": flags.always_on,
            "always_off": flags.always_off,
            "dependencies": sorted(self.registry.dependencies_of(server_id)),
        }
        if self.dispatcher.is_managed(server_id):
            st = self.dispatcher.state(server_id)
            summary.update({
                "actual": st.actual.value,
                "phase": st.phase.value,
                "degraded": st.degraded,
                "last_error": st.last_error,
                "last_error_kind": st.last_error_kind,
                "last_action": st.last_action,
                "last_action_date": _isoformat(st.last_action_date),
            })
        return summary

    def _device_status(self, device: Device, record: ReachabilityRecord,
                       now: float) -> dict[str, Any]:
        status = {
            "id": device.id,
            "name": device.name,
            "ip": device.ip,
            "timeout": device.timeout,
            "online": record.is_reachable_at(now, device.timeout),
            "last_seen": _isoformat(record.last_seen_date),
        }
        if self.registry.is_server(device.id):
            status["mac"] = device.mac
        return status

    # ---- Overrides ----

    def get_always_off(self, server_id: str) -> bool:
        self._require_server(server_id)
        return self.overrides.read(server_id).always_off

    def get_always_on(self, server_id: str) -> bool:
        self._require_server(server_id)
        return self.overrides.read(server_id).always_on

    async def set_always_off(self, server_id: str) -> bool:
        return await self._set_override(server_id, "always_off", True)

    async def clear_always_off(self, server_id: str) -> bool:
        return await self._set_override(server_id, "always_off", False)

    async def set_always_on(self, server_id: str) -> bool:
        return await self._set_override(server_id, "always_on", True)

    async def clear_always_on(self, server_id: str) -> bool:
        return await self._set_override(server_id, "always_on", False)

    async def _set_override(self, server_id: str, flag: str, enabled: bool) -> bool:
        self._require_server(server_id)
        async with self._lock:
            if flag == "always_off":
                result = self.overrides.set_always_off(server_id, enabled)
            else:
                result = self.overrides.set_always_on(server_id, enabled)
        self._publish("override", {"id": server_id, flag: result})
        return result

    # ---- Manual actions ----

    async def force_wakeup(self, server_id: str) -> dict[str, Any]:
        return await self._force(server_id, PowerState.ON)

    async def force_shutdown(self, server_id: str) -> dict[str, Any]:
        return await self._force(server_id, PowerState.OFF)

    async def _force(self, server_id: str, want: PowerState) -> dict[str, Any]:
        # Unknown ids raise UnknownDeviceError, machines NotControllable
        self.dispatcher.check_controllable(server_id)
        while True:
            await self.dispatcher.wait_idle(server_id)
            async with self._lock:
                if not self.dispatcher.in_flight(server_id):
                    task = self.dispatcher.start_manual(server_id, want)
                    break
        # Shielded: a disconnecting client must not cancel a half-done action
        await asyncio.shield(task)
        return self.server_summary(server_id)

    def _require_server(self, server_id: str):
        if server_id not in self.registry or not self.registry.is_server(server_id):
            raise UnknownDeviceError(server_id)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
