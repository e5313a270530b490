"""Retry bookkeeping for delayed message pushes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Union


@dataclass
class Retry:
    """Counts attempts and remembers when the next one is due."""

    retry_times: int = 0
    execute_time: datetime = field(default_factory=datetime.now)
    do: Optional[Callable[[], None]] = None

    def set_delay(self, delay: Union[timedelta, float]) -> "Retry":
        """Schedule the next attempt after ``delay`` (a timedelta or seconds)."""
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        self.execute_time = datetime.now() + delay
        return self

    def get_delay(self) -> timedelta:
        """Time left until the next attempt; negative once it is due."""
        return self.execute_time - datetime.now()