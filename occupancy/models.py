"""
SQLAlchemy ORM models.

- OccupancySample: one row per (site, poll cycle) history sample
"""

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String

from occupancy.database import Base


class OccupancySample(Base):
    """
    Archived copy of a HistorySample.

    The in-memory ring buffer is capped per site; this table is not.
    """

    __tablename__ = "occupancy_samples"

    id = Column(Integer, primary_key=True, index=True)

    site_id = Column(String(64), nullable=False)

    # When the cycle ran
    ts = Column(DateTime, default=datetime.now, nullable=False)
    epoch_ms = Column(BigInteger, nullable=False)
    label = Column(String(16), nullable=False)

    # Confirmed sessions after the cycle, and devices above threshold in it
    confirmed_count = Column(Integer, nullable=False)
    active_count = Column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_occupancy_samples_site_epoch", "site_id", "epoch_ms"),
    )
