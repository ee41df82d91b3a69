"""
Order Identity Generator
========================
Fixed-length, roughly time-ordered order references for charge attempts.

Layout (20 digits): ``yyMMddHHmmss`` + 3-digit milliseconds + 5-digit suffix.
The time part never goes backwards within a process. The suffix comes from
the random source, or from a local counter if the random source fails.
"""

import itertools
import secrets
import threading
from datetime import datetime
from typing import Callable, Optional

ORDER_ID_LENGTH = 20
_SUFFIX_DIGITS = 5
_SUFFIX_SPACE = 10 ** _SUFFIX_DIGITS


class OrderIdGenerator:
    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        random_below: Optional[Callable[[int], int]] = None,
    ):
        self._clock = clock or datetime.now
        self._random_below = random_below or secrets.randbelow
        self._counter = itertools.count(1)
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def _time_part(self) -> str:
        with self._lock:
            now = self._clock()
            if self._last is not None and now < self._last:
                now = self._last
            self._last = now
        return now.strftime("%y%m%d%H%M%S") + f"{now.microsecond // 1000:03d}"

    def _suffix(self) -> int:
        try:
            return int(self._random_below(_SUFFIX_SPACE)) % _SUFFIX_SPACE
        except Exception:
            return next(self._counter) % _SUFFIX_SPACE

    def next_order_id(self) -> str:
        return f"{self._time_part()}{self._suffix():0{_SUFFIX_DIGITS}d}"

    def order_date(self) -> str:
        """YYYYMMDD of the last issued id (or now)."""
        return (self._last or self._clock()).strftime("%Y%m%d")


_default = OrderIdGenerator()


def next_order_id() -> str:
    return _default.next_order_id()


__all__ = ["OrderIdGenerator", "next_order_id", "ORDER_ID_LENGTH"]
