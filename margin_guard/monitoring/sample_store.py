"""Per-account rolling buffers of margin samples."""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from margin_guard.models import MarginSample

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 2 * 60 * 60
DEFAULT_TREND_WINDOW = 10


class MarginSampleStore:
    """Time-ordered sample buffer per account.

    Two views are kept for every account: the full retention window used for
    forecasting, and a short trend window holding only the most recent margin
    levels.  Buffers are created on first ``record`` and torn down explicitly
    through :meth:`remove_account`.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        trend_window: int = DEFAULT_TREND_WINDOW,
    ) -> None:
        self._retention_seconds = retention_seconds
        self._trend_window = trend_window
        self._samples: Dict[str, Deque[MarginSample]] = {}
        self._trend: Dict[str, Deque[float]] = {}

    @property
    def retention_seconds(self) -> float:
        return self._retention_seconds

    def record(self, account_id: str, sample: MarginSample) -> bool:
        """Append ``sample`` and purge entries older than the retention window.

        Samples older than the latest recorded one are rejected.
        """

        buffer = self._samples.setdefault(account_id, deque())
        if buffer and sample.timestamp < buffer[-1].timestamp:
            logger.warning(
                "Rejected out-of-order margin sample for %s (%.3f < %.3f)",
                account_id,
                sample.timestamp,
                buffer[-1].timestamp,
            )
            return False
        buffer.append(sample)
        cutoff = sample.timestamp - self._retention_seconds
        while buffer and buffer[0].timestamp < cutoff:
            buffer.popleft()

        trend = self._trend.get(account_id)
        if trend is None:
            trend = deque(maxlen=self._trend_window)
            self._trend[account_id] = trend
        trend.append(sample.margin_level)
        return True

    def samples(self, account_id: str) -> Tuple[MarginSample, ...]:
        return tuple(self._samples.get(account_id, ()))

    def margin_levels(self, account_id: str) -> List[float]:
        return [sample.margin_level for sample in self._samples.get(account_id, ())]

    def latest(self, account_id: str) -> Optional[MarginSample]:
        buffer = self._samples.get(account_id)
        return buffer[-1] if buffer else None

    def previous(self, account_id: str) -> Optional[MarginSample]:
        buffer = self._samples.get(account_id)
        if not buffer or len(buffer) < 2:
            return None
        return buffer[-2]

    def trend_window(self, account_id: str) -> Tuple[float, ...]:
        return tuple(self._trend.get(account_id, ()))

    def accounts(self) -> List[str]:
        return list(self._samples)

    def remove_account(self, account_id: str) -> None:
        self._samples.pop(account_id, None)
        self._trend.pop(account_id, None)

    def clear(self) -> None:
        self._samples.clear()
        self._trend.clear()
