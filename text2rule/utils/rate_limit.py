from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimiter:
    """Fixed pause taken by the calling thread before each oracle call.

    Not coordinated across threads: concurrent runs each pay their own delay.
    """

    delay_ms: int = 0

    @property
    def enabled(self) -> bool:
        return self.delay_ms > 0

    def apply(self) -> None:
        if self.enabled:
            time.sleep(self.delay_ms / 1000.0)
