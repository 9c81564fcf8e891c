"""
Per-site occupancy time series.

Every poll cycle appends one HistorySample (confirmed sessions, devices
active right now). The in-memory series is a ring buffer; when an archive
is configured each sample is also written to the database, and the ring
buffers are primed from it on startup.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from occupancy.models import OccupancySample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistorySample:
    label: str
    epoch_ms: int
    confirmed_count: int
    active_count: int

    @classmethod
    def at(cls, now: datetime, confirmed_count: int, active_count: int) -> "HistorySample":
        return cls(
            label=now.strftime("%H:%M:%S"),
            epoch_ms=int(now.timestamp() * 1000),
            confirmed_count=confirmed_count,
            active_count=active_count,
        )


class HistoryArchive:
    """Writes samples to the `occupancy_samples` table."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def write(self, site_id: str, sample: HistorySample) -> None:
        with self.session_factory() as db:
            db.add(
                OccupancySample(
                    site_id=site_id,
                    ts=datetime.fromtimestamp(sample.epoch_ms / 1000),
                    epoch_ms=sample.epoch_ms,
                    label=sample.label,
                    confirmed_count=sample.confirmed_count,
                    active_count=sample.active_count,
                )
            )
            db.commit()

    def recent(self, site_id: str, limit: int) -> List[HistorySample]:
        """Latest `limit` samples for a site, oldest first."""
        with self.session_factory() as db:
            rows = db.scalars(
                select(OccupancySample)
                .where(OccupancySample.site_id == site_id)
                .order_by(OccupancySample.epoch_ms.desc())
                .limit(limit)
            ).all()
        return [
            HistorySample(r.label, r.epoch_ms, r.confirmed_count, r.active_count)
            for r in reversed(rows)
        ]


class HistoryRecorder:
    """Bounded per-site history; insertion order with strictly increasing epoch ms."""

    def __init__(self, capacity: int = 100, archive: Optional[HistoryArchive] = None):
        self.capacity = capacity
        self.archive = archive
        self._series: Dict[str, Deque[HistorySample]] = {}

    def _series_for(self, site_id: str) -> Deque[HistorySample]:
        series = self._series.get(site_id)
        if series is None:
            series = deque(maxlen=self.capacity)
            self._series[site_id] = series
        return series

    def prime(self, site_id: str) -> int:
        """Load the newest archived samples for a site that has no history yet."""
        if self.archive is None or self._series.get(site_id):
            return 0
        try:
            samples = self.archive.recent(site_id, self.capacity)
        except SQLAlchemyError as exc:
            logger.warning("[%s] Could not load archived history: %s", site_id, exc)
            return 0
        self._series_for(site_id).extend(samples)
        return len(samples)

    def append(self, site_id: str, sample: HistorySample) -> bool:
        series = self._series_for(site_id)
        if series and sample.epoch_ms <= series[-1].epoch_ms:
            logger.debug("[%s] Dropping out-of-order history sample %s", site_id, sample.epoch_ms)
            return False

        series.append(sample)
        return True

    async def record(self, site_id: str, sample: HistorySample) -> bool:
        """Append to the ring buffer and archive the sample in a worker thread."""
        if not self.append(site_id, sample):
            return False

        if self.archive is not None:
            try:
                await asyncio.to_thread(self.archive.write, site_id, sample)
            except SQLAlchemyError as exc:
                logger.warning("[%s] Could not archive history sample: %s", site_id, exc)
        return True

    def recent(self, site_id: str, limit: Optional[int] = None) -> List[HistorySample]:
        samples = list(self._series.get(site_id, ()))
        if limit is not None:
            samples = samples[-limit:] if limit > 0 else []
        return samples

    def site_ids(self) -> List[str]:
        return list(self._series.keys())
