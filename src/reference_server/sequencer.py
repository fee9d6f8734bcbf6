"""
Response reordering for transports that require in-order responses.

Each request with an id reserves a sequence number when it arrives. Responses
are released strictly in sequence order; a request that ends without a
response (e.g. cancelled by the peer) completes its slot with None so later
responses are not held back.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Optional


class ResponseSequencer:
    """Buffers out-of-order completions and emits them in arrival order."""

    def __init__(self, emit: Callable[[str], Awaitable[None]]):
        self._emit = emit
        self._next_sequence = 0
        self._next_to_emit = 0
        self._ready: Dict[int, Optional[str]] = {}
        self._flush_lock = asyncio.Lock()

    @property
    def pending(self) -> int:
        """Number of completed responses waiting for an earlier one."""
        return len(self._ready)

    def reserve(self) -> int:
        """Claim the next sequence number."""
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence

    async def complete(self, sequence: int, payload: Optional[str]) -> None:
        """Mark a slot finished and flush every response that is now in order."""
        if sequence < self._next_to_emit or sequence in self._ready:
            raise ValueError(f"Sequence {sequence} already completed")

        self._ready[sequence] = payload
        await self._flush()

    @property
    def outstanding(self) -> int:
        """Number of reserved slots not yet emitted or released."""
        return self._next_sequence - self._next_to_emit

    async def release_pending(self) -> None:
        """Give up every slot still open and emit whatever completed behind them."""
        for sequence in range(self._next_to_emit, self._next_sequence):
            self._ready.setdefault(sequence, None)
        await self._flush()

    async def _flush(self) -> None:
        async with self._flush_lock:
            while self._next_to_emit in self._ready:
                ready = self._ready.pop(self._next_to_emit)
                self._next_to_emit += 1
                if ready is not None:
                    await self._emit(ready)
