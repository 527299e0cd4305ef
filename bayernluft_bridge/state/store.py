"""In-process state tree with acknowledgement semantics.

Values are addressed by dotted paths (``garage.states.on``). Every write
carries an ``ack`` flag: acknowledged writes report device state, while
unacknowledged writes are user intents and get routed to the handlers
subscribed under a matching prefix. Handlers run as independent tasks so a
writer never waits for a command to finish.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from ..core import IntentHandler, StateValue, WriteListener

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateEntry:
    value: StateValue
    ack: bool
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryStateStore:
    """Caches the latest entry per path and fans out intents."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, StateEntry] = {}
        self._subscriptions: List[Tuple[str, IntentHandler]] = []
        self._listeners: List[WriteListener] = []
        self._pending: Set[asyncio.Task[None]] = set()

    async def get(self, path: str) -> Optional[StateEntry]:
        return self._entries.get(path)

    async def get_value(self, path: str, default: Any = None) -> Any:
        entry = self._entries.get(path)
        return default if entry is None else entry.value

    async def set(self, path: str, value: StateValue, *, ack: bool) -> None:
        entry = StateEntry(value=value, ack=ack, updated_at=self._clock())
        self._entries[path] = entry

        for listener in list(self._listeners):
            self._spawn(listener, path, entry)

        if ack:
            return

        for prefix, handler in list(self._subscriptions):
            if path.startswith(prefix):
                self._spawn(handler, path, entry)

    def subscribe(self, prefix: str, handler: IntentHandler) -> None:
        self._subscriptions.append((prefix, handler))
        LOGGER.debug("Subscribed to unacknowledged writes under %s", prefix)

    def add_listener(self, listener: WriteListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: WriteListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def paths(self, prefix: str = "") -> Iterator[str]:
        return (path for path in sorted(self._entries) if path.startswith(prefix))

    def as_dict(self, prefix: str = "") -> Dict[str, StateValue]:
        return {path: self._entries[path].value for path in self.paths(prefix)}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every handler spawned so far (and any they spawn) finished."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _spawn(self, callback: Callable[..., Any], path: str, entry: StateEntry) -> None:
        task = asyncio.create_task(self._run_callback(callback, path, entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_callback(
        self, callback: Callable[..., Any], path: str, entry: StateEntry
    ) -> None:
        try:
            result = callback(path, entry)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("State callback failed for %s", path)
