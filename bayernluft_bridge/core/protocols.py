"""Protocol definitions for the state store collaborator and its callbacks."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol

from .models import StateValue

IntentHandler = Callable[[str, Any], Awaitable[None] | None]
WriteListener = Callable[[str, Any], Awaitable[None] | None]


class StateStore(Protocol):
    """Key-path addressed values carrying an acknowledgement flag."""

    async def get(self, path: str) -> Optional[Any]:
        """Return the current entry at ``path`` or None when never written."""
        ...

    async def set(self, path: str, value: StateValue, *, ack: bool) -> None:
        """Write ``value``; ``ack=False`` marks it as a pending user intent."""
        ...

    def subscribe(self, prefix: str, handler: IntentHandler) -> None:
        """Route unacknowledged writes under ``prefix`` to ``handler``."""
        ...
