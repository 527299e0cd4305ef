"""Core primitives for bayernluft-bridge."""

from .models import (
    CommandIntent,
    CommandKind,
    Device,
    StateValue,
    command_path,
    split_command_path,
)
from .protocols import IntentHandler, StateStore, WriteListener

__all__ = [
    "CommandIntent",
    "CommandKind",
    "Device",
    "IntentHandler",
    "StateStore",
    "StateValue",
    "WriteListener",
    "command_path",
    "split_command_path",
]
