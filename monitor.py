"""Reachability monitor: probes every device once per tick.

Probes run concurrently, bounded by a semaphore so a large device list
does not flood the local interface, and are joined before any record is
updated. The resolver therefore always sees a complete snapshot of one
tick. A failed probe only degrades the device it concerns.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Optional

from device_state import ReachabilityRecord
from errors import ProbeError
from registry import Device, Registry

logger = logging.getLogger(__name__)


class PingCommand:
    """ICMP echo through the system ``ping`` binary (no raw socket privileges needed)."""

    def __init__(self, interface: str = ""):
        self.interface = interface

    def command(self, ip: str, timeout: float) -> list[str]:
        family = "-6" if ":" in ip else "-4"
        cmd = ["ping", family, "-n", "-q", "-c", "1", "-W", str(max(1, math.ceil(timeout)))]
        if self.interface:
            cmd += ["-I", self.interface]
        cmd.append(ip)
        return cmd

    async def ping(self, ip: str, timeout: float) -> bool:
        """Return True if *ip* answered a single echo request within *timeout*."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command(ip, timeout),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise ProbeError(ip, f"cannot run ping: {e}") from e
        try:
            # ping's own -W is whole seconds; give it one extra second to exit
            returncode = await asyncio.wait_for(proc.wait(), timeout + 1.0)
        except asyncio.TimeoutError:
            raise ProbeError(ip, f"no answer within {timeout:.1f}s") from None
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
        return returncode == 0


class ReachabilityMonitor:
    """Owns the reachability record of every device.

    Only probe_all() writes records; everything else reads copies.
    """

    def __init__(self, registry: Registry, pinger, timeout: float,
                 workers: int = 16,
                 clock: Callable[[], float] = time.monotonic,
                 on_change: Optional[Callable[[Device, ReachabilityRecord], None]] = None):
        self.registry = registry
        self.pinger = pinger
        self.timeout = timeout
        self.workers = workers
        self.clock = clock
        self.on_change = on_change
        self._records: dict[str, ReachabilityRecord] = {
            d.id: ReachabilityRecord(device_id=d.id) for d in registry.devices()
        }
        self.probe_count = 0

    # ---- Probing ----

    async def probe_all(self) -> dict[str, bool]:
        """Probe every device once and apply the joined results.

        Returns the raw probe outcome per device id.
        """
        devices = self.registry.devices()
        semaphore = asyncio.Semaphore(self.workers)
        logger.debug("pinging %d devices...", len(devices))
        outcomes = await asyncio.gather(*(self._probe(d, semaphore) for d in devices))
        results = {d.id: ok for d, ok in zip(devices, outcomes)}
        self.apply(results)
        self.probe_count += 1
        return results

    async def _probe(self, device: Device, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self.pinger.ping(device.ip, self.timeout), self.timeout + 2.0)
            except asyncio.TimeoutError:
                logger.debug("no ping response from %s (deadline exceeded)", device)
            except (ProbeError, OSError) as e:
                logger.debug("ping of %s failed: %s", device, e)
            return False

    def apply(self, results: dict[str, bool], now: Optional[float] = None):
        """Record one tick's probe outcomes.

        Success marks the device reachable and refreshes last_seen. Failure
        clears the flag but keeps last_seen.
        """
        if now is None:
            now = self.clock()
        for device_id, ok in results.items():
            record = self._records.get(device_id)
            if record is None:
                logger.warning("received probe result for unknown device %s", device_id)
                continue
            device = self.registry.device(device_id)
            was_online = record.is_reachable_at(now, device.timeout)
            if ok:
                record.reachable = True
                record.last_seen = now
                record.last_seen_date = datetime.now(timezone.utc)
            else:
                record.reachable = False
            is_online = record.is_reachable_at(now, device.timeout)
            if is_online != was_online:
                logger.info("%s is now %s", device, "online" if is_online else "offline")
                if self.on_change:
                    self.on_change(device, replace(record))

    # ---- Queries ----

    def record(self, device_id: str) -> ReachabilityRecord:
        self.registry.device(device_id)
        return replace(self._records[device_id])

    def records(self) -> list[ReachabilityRecord]:
        return [replace(self._records[d.id]) for d in self.registry.devices()]

    def is_reachable(self, device_id: str, now: Optional[float] = None) -> bool:
        """Staleness-adjusted reachability of a single device."""
        device = self.registry.device(device_id)
        if now is None:
            now = self.clock()
        return self._records[device_id].is_reachable_at(now, device.timeout)

    def seen_since(self, device_id: str, since: float) -> bool:
        """True if *device_id* answered a probe recorded strictly after *since*."""
        self.registry.device(device_id)
        last_seen = self._records[device_id].last_seen
        return last_seen is not None and last_seen > since

    def snapshot(self, now: Optional[float] = None) -> dict[str, bool]:
        """Staleness-adjusted reachability of every device at *now*."""
        if now is None:
            now = self.clock()
        return {
            d.id: self._records[d.id].is_reachable_at(now, d.timeout)
            for d in self.registry.devices()
        }
