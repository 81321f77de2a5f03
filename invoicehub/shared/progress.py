"""Progress reporting helpers for uploads and analyses."""

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class PercentReporter:
    """Forward monotonic 0-100 percentages to a callback.

    Repeated or decreasing values are dropped so callers never see progress
    move backwards.
    """

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last = -1

    @property
    def last(self) -> int:
        return self._last

    def report(self, percent: float) -> None:
        value = max(0, min(100, int(percent)))
        if self._callback is None or value <= self._last:
            return
        self._last = value
        self._callback(value)

    def report_fraction(self, done: int, total: int) -> None:
        if total <= 0:
            return
        self.report(done * 100 / total)
