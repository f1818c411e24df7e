"""Signals, messages, subsystem contexts and attribute parsing for asyncio subsystems."""

__version__ = "0.4.1"
__all__ = ["core", "attrs", "context"]