import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from config import settings


@dataclass
class ChargeSnapshot:
    base: int
    max: int
    last_synced_at: float


class ChargePredictor:
    """Per-account charge model: one charge regenerates every regen interval, capped at max.

    Readings from the remote profile are authoritative; between readings the
    count is extrapolated and reduced by local consumption.
    """

    def __init__(self, regen_seconds: Optional[float] = None, sync_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.time):
        self.regen_seconds = regen_seconds or settings.charge_regen_seconds
        self.sync_seconds = sync_seconds or settings.charge_sync_seconds
        self.clock = clock
        self._snapshots: Dict[int, ChargeSnapshot] = {}

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

    def _available(self, snap: ChargeSnapshot, now: float) -> int:
        grown = math.floor(max(0.0, now - snap.last_synced_at) / self.regen_seconds)
        return min(snap.max, snap.base + grown)

    def mark_from_authoritative(self, account_id: int, count: float, max_count: int, now: Optional[float] = None):
        self._snapshots[account_id] = ChargeSnapshot(
            base=max(0, math.floor(count)),
            max=max(0, int(max_count)),
            last_synced_at=self._now(now),
        )

    def predict(self, account_id: int, now: Optional[float] = None) -> Optional[dict]:
        snap = self._snapshots.get(account_id)
        if snap is None:
            return None
        return {"count": self._available(snap, self._now(now)), "max": snap.max}

    def consume(self, account_id: int, n: int, now: Optional[float] = None):
        snap = self._snapshots.get(account_id)
        if snap is None:
            return
        now = self._now(now)
        available = self._available(snap, now)
        snap.base = max(0, available - max(0, n))
        # keep the partial regen interval already accrued
        elapsed = max(0.0, now - snap.last_synced_at)
        snap.last_synced_at = now - (elapsed % self.regen_seconds)

    def is_stale(self, account_id: int, now: Optional[float] = None) -> bool:
        snap = self._snapshots.get(account_id)
        if snap is None:
            return True
        return self._now(now) - snap.last_synced_at > self.sync_seconds

    def clear(self, account_id: int):
        self._snapshots.pop(account_id, None)
