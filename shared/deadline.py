"""
Request-scoped deadline propagated through every pipeline stage.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Deadline:
    """
    Absolute deadline on the monotonic clock.

    Usage:
        deadline = Deadline.after(10.0)
        result = await deadline.run(store.list_tables())
    """

    expires_at: float
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        now = time.monotonic()
        return cls(expires_at=now + seconds, started_at=now)

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(expires_at=float("inf"))

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def timeout(self, cap: Optional[float] = None) -> Optional[float]:
        """Seconds to hand to asyncio.wait_for; None when unbounded."""
        remaining = None if self.expires_at == float("inf") else self.remaining()
        if cap is None:
            return remaining
        return cap if remaining is None else min(cap, remaining)

    async def run(self, awaitable: Awaitable[T], cap: Optional[float] = None) -> T:
        """Await under the deadline, raising asyncio.TimeoutError on expiry."""
        return await asyncio.wait_for(awaitable, timeout=self.timeout(cap))
