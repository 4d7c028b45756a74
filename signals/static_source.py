"""
In-memory signal source: latest signal per symbol plus a FIFO of proposals.
"""
from collections import deque
from typing import Deque, Dict, Iterable, Optional

from models import Signal


class StaticSignalSource:
    """ISignalSource for paper runs and tests."""

    def __init__(self, signals: Iterable[Signal] = ()):
        self._latest: Dict[str, Signal] = {}
        self._pending: Deque[Signal] = deque()
        for s in signals:
            self.publish(s)

    def publish(self, signal: Signal) -> None:
        """Record a proposal; it also becomes the symbol's current signal."""
        self._latest[signal.symbol] = signal
        self._pending.append(signal)

    def set_current(self, signal: Signal) -> None:
        """Replace the current signal without queueing it for execution."""
        self._latest[signal.symbol] = signal

    async def current_signal(self, symbol: str) -> Optional[Signal]:
        return self._latest.get(symbol)

    async def next_signal(self) -> Optional[Signal]:
        return self._pending.popleft() if self._pending else None
