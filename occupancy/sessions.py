"""
Presence sessions for one site.

Each device identity (MAC or synthetic port identity) moves through:

    Absent -> Pending(n) -> Confirmed -> Absent

- A device is *detected* in a cycle when its rate exceeds the threshold.
- Pending sessions are dropped on the first cycle they are not detected.
- Confirmed sessions survive misses but stop refreshing `last_active`,
  and are removed once `last_active` is older than the session timeout.
- Crossing the daily reset time clears the whole site before the cycle's
  detections are applied.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from occupancy.config import GlobalSettings
from occupancy.records import DeviceTrafficRecord

logger = logging.getLogger(__name__)


@dataclass
class PresenceSession:
    identity: str
    first_seen: datetime
    last_seen: datetime
    last_active: datetime
    last_reset: datetime
    consecutive_poll_count: int = 1
    confirmed: bool = False
    switch_id: Optional[str] = None
    switch_name: Optional[str] = None
    descr: Optional[str] = None
    current_traffic_kbps: float = 0.0

    def show(self, device: DeviceTrafficRecord) -> None:
        """Copy display fields from the latest traffic record."""
        self.switch_id = device.switch_id
        self.switch_name = device.switch_name
        self.descr = device.descr
        self.current_traffic_kbps = device.rate_kbps


@dataclass
class CycleSummary:
    confirmed_count: int
    pending_count: int
    active_count: int
    created: int = 0
    confirmed_now: int = 0
    expired: int = 0
    dropped: int = 0
    reset: bool = False
    replayed: bool = False


def reset_due(last_reset: datetime, now: datetime, hour: int, minute: int) -> bool:
    """True if the most recent reset instant at or before `now` is after `last_reset`."""
    latest_reset = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if latest_reset > now:
        latest_reset -= timedelta(days=1)
    return last_reset < latest_reset


class PresenceSessionTracker:
    """
    Owns the session map for one site.

    Only `update()` mutates it; readers get copies via `snapshot()`.
    """

    def __init__(self, site_id: str):
        self.site_id = site_id
        self._sessions: Dict[str, PresenceSession] = {}
        self._last_cycle_at: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, identity: str) -> bool:
        return identity in self._sessions

    def snapshot(self) -> List[PresenceSession]:
        return [replace(s) for s in self._sessions.values()]

    def get(self, identity: str) -> Optional[PresenceSession]:
        session = self._sessions.get(identity)
        return replace(session) if session else None

    def counts(self) -> Dict[str, int]:
        confirmed = sum(1 for s in self._sessions.values() if s.confirmed)
        return {
            "confirmed": confirmed,
            "pending": len(self._sessions) - confirmed,
            "total": len(self._sessions),
        }

    # -- state machine -------------------------------------------------------

    def _apply_daily_reset(self, now: datetime, global_settings: GlobalSettings) -> bool:
        hour, minute = global_settings.reset_hour_minute
        if any(reset_due(s.last_reset, now, hour, minute) for s in self._sessions.values()):
            logger.info("[%s] Daily reset at %s: clearing %d sessions",
                        self.site_id, global_settings.daily_reset_time, len(self._sessions))
            self._sessions.clear()
            return True
        return False

    def update(
        self,
        devices: Sequence[DeviceTrafficRecord],
        global_settings: GlobalSettings,
        now: datetime,
        threshold_kbps: Optional[float] = None,
    ) -> CycleSummary:
        """
        Apply one poll cycle.

        `devices` is the merged list for the whole site. `threshold_kbps`
        overrides the global threshold (site-level setting).
        """
        # wall clock may step back (DST, NTP); only an identical timestamp is a replay
        if self._last_cycle_at is not None and now == self._last_cycle_at:
            logger.debug("[%s] Ignoring replayed cycle at %s", self.site_id, now.isoformat())
            counts = self.counts()
            return CycleSummary(counts["confirmed"], counts["pending"], 0, replayed=True)
        self._last_cycle_at = now

        summary = CycleSummary(0, 0, 0)
        summary.reset = self._apply_daily_reset(now, global_settings)

        threshold = global_settings.traffic_threshold_kbps if threshold_kbps is None else threshold_kbps
        required = global_settings.confirmation_polls_required

        # first record wins for display fields when an identity repeats
        detected: Dict[str, DeviceTrafficRecord] = {}
        for device in devices:
            if device.rate_kbps > threshold and device.identity not in detected:
                detected[device.identity] = device
        summary.active_count = len(detected)

        for identity, device in detected.items():
            session = self._sessions.get(identity)
            if session is None:
                session = PresenceSession(
                    identity=identity,
                    first_seen=now,
                    last_seen=now,
                    last_active=now,
                    last_reset=now,
                    consecutive_poll_count=1,
                    confirmed=required <= 1,
                )
                self._sessions[identity] = session
                summary.created += 1
                summary.confirmed_now += int(session.confirmed)
            else:
                session.consecutive_poll_count += 1
                session.last_seen = now
                session.last_active = now
                if not session.confirmed and session.consecutive_poll_count >= required:
                    session.confirmed = True
                    summary.confirmed_now += 1
            session.show(device)

        for identity, session in list(self._sessions.items()):
            if identity in detected:
                continue
            if not session.confirmed:
                del self._sessions[identity]
                summary.dropped += 1
            else:
                session.consecutive_poll_count = 0

        timeout = timedelta(minutes=global_settings.session_timeout_minutes)
        for identity, session in list(self._sessions.items()):
            if session.confirmed and now - session.last_active > timeout:
                del self._sessions[identity]
                summary.expired += 1

        counts = self.counts()
        summary.confirmed_count = counts["confirmed"]
        summary.pending_count = counts["pending"]
        return summary
