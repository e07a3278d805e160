"""Durable timer sweeps and in-process wake-ups for delayed executions."""
from timers.manager import TimerManager

__all__ = ["TimerManager"]
