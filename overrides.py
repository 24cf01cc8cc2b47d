"""Per-server manual overrides (always on / always off).

With a files root configured, a flag is the presence of
``<root>/<server_id>/alwaysoff`` or ``<root>/<server_id>/alwayson``, so it
can be toggled with ``touch``/``rm`` as well as through the API. Without
a root the flags only live in memory.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional

from constants import ALWAYS_OFF_FILE, ALWAYS_ON_FILE
from device_state import OverrideFlags

logger = logging.getLogger(__name__)


class OverrideStore:
    """Owns the override flags of every server."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root) if root is not None else None
        self._flags: dict[str, OverrideFlags] = {}

    # ---- Public API ----

    def read(self, server_id: str) -> OverrideFlags:
        """Current flags of *server_id*, re-read from disk when file backed."""
        if self.root is None:
            return self._flags.get(server_id, OverrideFlags())
        return OverrideFlags(
            always_on=self._path(server_id, ALWAYS_ON_FILE).exists(),
            always_off=self._path(server_id, ALWAYS_OFF_FILE).exists(),
        )

    def refresh(self, server_ids: Iterable[str]) -> dict[str, OverrideFlags]:
        """Re-read the flags of every server, logging changes. Called once per tick."""
        for server_id in server_ids:
            self._update(server_id, self.read(server_id))
        return self.snapshot()

    def snapshot(self) -> dict[str, OverrideFlags]:
        return dict(self._flags)

    def set_always_off(self, server_id: str, enabled: bool) -> bool:
        self._write(server_id, ALWAYS_OFF_FILE, enabled)
        flags = self.read(server_id)
        if self.root is None:
            flags = OverrideFlags(always_on=flags.always_on, always_off=enabled)
        self._update(server_id, flags)
        return self._flags[server_id].always_off

    def set_always_on(self, server_id: str, enabled: bool) -> bool:
        self._write(server_id, ALWAYS_ON_FILE, enabled)
        flags = self.read(server_id)
        if self.root is None:
            flags = OverrideFlags(always_on=enabled, always_off=flags.always_off)
        self._update(server_id, flags)
        return self._flags[server_id].always_on

    # ---- Internals ----

    def _path(self, server_id: str, name: str) -> Path:
        return self.root / server_id / name

    def _write(self, server_id: str, name: str, enabled: bool):
        """Create or remove a flag file. OSError propagates to the caller."""
        if self.root is None:
            return
        path = self._path(server_id, name)
        if enabled:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
        else:
            # Already absent is fine
            path.unlink(missing_ok=True)

    def _update(self, server_id: str, flags: OverrideFlags):
        previous = self._flags.get(server_id, OverrideFlags())
        if flags.always_off != previous.always_off:
            logger.info("%s: ALWAYS OFF has been %s", server_id,
                        "enabled" if flags.always_off else "disabled")
        if flags.always_on != previous.always_on:
            logger.info("%s: ALWAYS ON has been %s", server_id,
                        "enabled" if flags.always_on else "disabled")
        if flags.always_off and flags.always_on and flags != previous:
            logger.warning("%s: ALWAYS OFF and ALWAYS ON are both enabled; ALWAYS OFF wins",
                           server_id)
        self._flags[server_id] = flags
