"""Action dispatcher: turns desired power states into wake/shutdown actions.

For every controllable server it compares the desired state of this tick
against the believed actual state and, once a mismatch has persisted for
a full debounce window, fires a single action:

  - Wake: send a magic packet, optimistically mark the server ON, then
    wait up to the server's timeout for it to answer a ping probed after
    the packet went out. Resend up to wake_attempts times; if it never
    answers the server is flagged degraded (WakeTimeout) but stays ON.
  - Shutdown: run the remote shutdown command, retrying transport failures
    with exponential backoff. Success marks the server OFF. Exhausting the
    attempts records ShutdownFailed and leaves it ON, so the next tick
    starts over.

At most one action per server is in flight. While it runs, new mismatches
for that server are ignored; a fresh comparison starts once it completes.
Manual requests skip the comparison and the debounce window, wait for any
in-flight action to finish and then run immediately.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, TYPE_CHECKING

from device_state import ActionPhase, PowerState, ServerState
from errors import ActionError, NotControllable, ShutdownFailed, TransportError, WakeTimeout

if TYPE_CHECKING:
    from registry import Device, Registry

logger = logging.getLogger(__name__)

WAKEUP = "wakeup"
SHUTDOWN = "shutdown"


class ActionDispatcher:
    """Owns the actual (believed) power state of every controllable server."""

    def __init__(self, registry: Registry, waker, shutdowner,
                 seen_since: Callable[[str, float], bool],
                 debounce: float,
                 wake_attempts: int = 3,
                 shutdown_attempts: int = 3,
                 backoff: float = 1.0,
                 backoff_max: float = 30.0,
                 confirm_poll: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 on_change: Optional[Callable[[ServerState], None]] = None):
        self.registry = registry
        self.waker = waker
        self.shutdowner = shutdowner
        self.seen_since = seen_since
        self.debounce = debounce
        self.wake_attempts = wake_attempts
        self.shutdown_attempts = shutdown_attempts
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.confirm_poll = confirm_poll
        self.clock = clock
        self.on_change = on_change
        self._states: dict[str, ServerState] = {
            sid: ServerState(server_id=sid)
            for sid in registry.servers() if registry.is_controllable(sid)
        }
        self._tasks: dict[str, asyncio.Task] = {}
        self._seeded = False

    # ---- State ----

    def seed(self, actual: Mapping[str, PowerState]):
        """Set the initial belief about each server (first tick only).

        Servers that already saw an action, e.g. a manual request served
        before the first tick, keep the state that action set.
        """
        if self._seeded:
            return
        self._seeded = True
        for sid, state in actual.items():
            st = self._states.get(sid)
            if st is not None and st.last_action is None:
                st.actual = state
                logger.debug("%s assumed %s at startup", sid, state.value)

    def state(self, server_id: str) -> ServerState:
        return replace(self._control(server_id))

    def states(self) -> dict[str, ServerState]:
        return {sid: replace(st) for sid, st in self._states.items()}

    def in_flight(self, server_id: str) -> bool:
        return server_id in self._tasks

    def is_managed(self, server_id: str) -> bool:
        return server_id in self._states

    # ---- Automatic path ----

    def reconcile(self, desired: Mapping[str, PowerState],
                  now: Optional[float] = None) -> list[str]:
        """Compare desired vs. actual for every server; start actions that are due.

        Returns the ids of the servers an action was started for. The
        actions themselves run as background tasks; servers never wait
        on each other.
        """
        if now is None:
            now = self.clock()
        started = []
        for sid, st in self._states.items():
            want = desired.get(sid)
            if want is None:
                continue
            if self.in_flight(sid):
                continue
            if want is st.actual:
                if st.mismatch_since is not None:
                    logger.debug("%s: mismatch cleared before debounce elapsed", sid)
                    st.mismatch_since = None
                continue
            if st.mismatch_since is None:
                st.mismatch_since = now
                logger.debug("%s: desired %s, believed %s; waiting %.1fs",
                             sid, want.value, st.actual.value, self.debounce)
            if now - st.mismatch_since < self.debounce:
                continue
            task = self._start(sid, want, manual=False)
            task.add_done_callback(self._consume_result)
            started.append(sid)
        return started

    # ---- Manual path ----

    def check_controllable(self, server_id: str):
        """Raise NotControllable (or UnknownDeviceError) unless actions are possible."""
        self._control(server_id)

    async def wait_idle(self, server_id: str):
        """Return once no action is in flight for *server_id*."""
        while (pending := self._tasks.get(server_id)) is not None:
            logger.info("%s: waiting for in-flight %s to complete", server_id,
                        self._states[server_id].last_action)
            await asyncio.wait({pending})

    def start_manual(self, server_id: str, want: PowerState) -> asyncio.Task:
        """Start a manual action immediately, bypassing comparison and hysteresis.

        The caller must make sure nothing is in flight (see wait_idle()).
        """
        self._control(server_id)
        if self.in_flight(server_id):
            raise RuntimeError(f"{server_id}: an action is already in flight")
        task = self._start(server_id, want, manual=True)
        task.add_done_callback(self._consume_result)
        return task

    async def execute(self, server_id: str, want: PowerState) -> ServerState:
        """Wake or shut down *server_id* right now and wait for the outcome.

        Raises NotControllable for machines and half-configured servers, and
        the action's own ActionError if it fails.
        """
        self._control(server_id)
        await self.wait_idle(server_id)
        await self.start_manual(server_id, want)
        return self.state(server_id)

    async def drain(self):
        """Wait for every in-flight action to complete."""
        if self._tasks:
            logger.info("waiting for %d in-flight action(s)...", len(self._tasks))
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # ---- Internals ----

    def _control(self, server_id: str) -> ServerState:
        device = self.registry.device(server_id)
        st = self._states.get(server_id)
        if st is None:
            if not device.mac:
                reason = "no MAC address configured"
            elif not device.credentials:
                reason = "no credentials configured"
            else:
                reason = "not a server"
            raise NotControllable(server_id, f"{device} cannot be controlled: {reason}")
        return st

    def _start(self, server_id: str, want: PowerState, manual: bool) -> asyncio.Task:
        st = self._states[server_id]
        device = self.registry.device(server_id)
        if want is PowerState.ON:
            st.phase = ActionPhase.WAKING_UP
            st.last_action = WAKEUP
            coro = self._wakeup(device, st, manual)
        else:
            st.phase = ActionPhase.SHUTTING_DOWN
            st.last_action = SHUTDOWN
            coro = self._shutdown(device, st)
        st.last_action_date = datetime.now(timezone.utc)
        task = asyncio.create_task(self._run(st, coro), name=f"{st.last_action}-{server_id}")
        self._tasks[server_id] = task
        self._notify(st)
        return task

    async def _run(self, st: ServerState, coro):
        try:
            await coro
            st.degraded = False
            st.last_error = None
            st.last_error_kind = None
        except ActionError as e:
            logger.error("%s", e)
            st.degraded = True
            st.last_error = str(e)
            st.last_error_kind = e.kind
            raise
        finally:
            st.phase = ActionPhase.IDLE
            st.mismatch_since = None
            self._tasks.pop(st.server_id, None)
            self._notify(st)

    async def _wakeup(self, device: Device, st: ServerState, manual: bool):
        attempts = 1 if manual else self.wake_attempts
        sent = False
        for attempt in range(1, attempts + 1):
            logger.info("waking up %s (attempt %d/%d)...", device, attempt, attempts)
            sent_at = self.clock()
            try:
                await self.waker.wakeup(device)
            except TransportError as e:
                logger.warning("%s", e)
                if attempt < attempts:
                    await asyncio.sleep(self._backoff_delay(attempt))
                continue
            sent = True
            # No acknowledgment exists for magic packets: assume it worked
            st.actual = PowerState.ON
            if manual:
                return
            if await self._wait_reachable(device, sent_at):
                logger.info("%s successfully woken up", device)
                return
            logger.warning("%s did not answer within %.0fs after wake-up", device, device.timeout)
        if not sent:
            raise WakeTimeout(device.id, f"could not send a wake-on-lan packet to {device}")
        raise WakeTimeout(device.id,
                          f"{device} not reachable after {attempts} wake-up attempt(s)")

    async def _wait_reachable(self, device: Device, since: float) -> bool:
        # Records from before the packet was sent do not count
        deadline = since + device.timeout
        while True:
            if self.seen_since(device.id, since):
                return True
            remaining = deadline - self.clock()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.confirm_poll, remaining))

    async def _shutdown(self, device: Device, st: ServerState):
        last_error: Optional[Exception] = None
        for attempt in range(1, self.shutdown_attempts + 1):
            logger.info("shutting down %s (attempt %d/%d)...", device,
                        attempt, self.shutdown_attempts)
            try:
                await self.shutdowner.shutdown(device)
            except TransportError as e:
                last_error = e
                if attempt < self.shutdown_attempts:
                    delay = self._backoff_delay(attempt)
                    logger.warning("%s; retrying in %.1fs", e, delay)
                    await asyncio.sleep(delay)
                continue
            st.actual = PowerState.OFF
            logger.info("%s successfully shut down", device)
            return
        raise ShutdownFailed(
            device.id,
            f"giving up on {device} after {self.shutdown_attempts} attempt(s): {last_error}")

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** (attempt - 1)), self.backoff_max)

    def _notify(self, st: ServerState):
        if self.on_change:
            self.on_change(replace(st))

    @staticmethod
    def _consume_result(task: asyncio.Task):
        # ActionErrors are already recorded on the server state by _run()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ActionError):
            logger.error("action task %s crashed", task.get_name(), exc_info=exc)
