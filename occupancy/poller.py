"""
Site polling and the process-wide polling service.

One SitePoller per enabled site runs a recurring timer. Each cycle:

1. fans out one DeviceActivityCollector per enabled switch (concurrently)
2. waits for every switch to settle (success, failure or timeout)
3. merges the device lists, tagged with switch id/name
4. applies them to the site's PresenceSessionTracker
5. appends a HistorySample

Cycles for a site never overlap: a tick that finds the previous cycle
still running is skipped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from occupancy.collector import DeviceActivityCollector
from occupancy.config import (
    GlobalSettings,
    SiteConfig,
    SwitchConfig,
    parse_global_settings,
    parse_sites,
    parse_switch,
    settings,
)
from occupancy.errors import ConfigurationError, InternalError
from occupancy.history import HistoryRecorder, HistorySample
from occupancy.rates import CounterCache
from occupancy.records import DeviceTrafficRecord, SwitchPollResult
from occupancy.sessions import PresenceSession, PresenceSessionTracker
from occupancy.snmp_client import SnmpClient, SnmpClientFactory

logger = logging.getLogger(__name__)

ClientFactory = Callable[[SwitchConfig], SnmpClient]


@dataclass
class CycleResult:
    site_id: str
    timestamp: datetime
    success: bool = True
    confirmed_count: int = 0
    pending_count: int = 0
    active_count: int = 0
    devices_seen: int = 0
    failed_switches: List[str] = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None


class SitePoller:
    """Runs poll cycles for one site against its tracker and history."""

    def __init__(
        self,
        site: SiteConfig,
        global_settings: GlobalSettings,
        tracker: PresenceSessionTracker,
        history: HistoryRecorder,
        counter_cache: CounterCache,
        client_factory: ClientFactory,
        lock: asyncio.Lock,
        switch_timeout: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.site = site
        self.global_settings = global_settings
        self.tracker = tracker
        self.history = history
        self.counter_cache = counter_cache
        self.client_factory = client_factory
        self.lock = lock
        self.switch_timeout = switch_timeout
        self.clock = clock

        self._stopped = False
        self._timer: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()

    @property
    def interval(self) -> float:
        return self.site.interval(self.global_settings)

    # -- collection ----------------------------------------------------------

    def _failed(self, switch: SwitchConfig, error: str) -> SwitchPollResult:
        return SwitchPollResult(
            host=switch.host,
            timestamp=self.clock(),
            success=False,
            error=error,
            switch_id=switch.id,
            switch_name=switch.name,
        )

    async def poll_switch(self, switch: SwitchConfig) -> SwitchPollResult:
        """Poll one switch. Failures of any kind come back as success=False."""
        try:
            collector = DeviceActivityCollector(
                switch, self.client_factory(switch), self.counter_cache, clock=self.clock
            )
            return await asyncio.wait_for(collector.poll(), timeout=self.switch_timeout)
        except asyncio.TimeoutError:
            logger.warning("[%s] Switch %s did not answer within %.0fs",
                           self.site.label, switch.label, self.switch_timeout)
            return self._failed(switch, f"timed out after {self.switch_timeout:g}s")
        except Exception as exc:
            logger.exception("[%s] Unexpected error polling %s", self.site.label, switch.label)
            return self._failed(switch, str(InternalError(f"{type(exc).__name__}: {exc}")))

    async def collect(self) -> List[SwitchPollResult]:
        switches = [sw for sw in self.site.switches if sw.enabled]
        return list(await asyncio.gather(*[self.poll_switch(sw) for sw in switches]))

    @staticmethod
    def merge(results: Sequence[SwitchPollResult]) -> List[DeviceTrafficRecord]:
        devices: List[DeviceTrafficRecord] = []
        for result in results:
            if result.success:
                devices.extend(d.tagged(result.switch_id, result.switch_name) for d in result.devices)
        return devices

    # -- cycle ---------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """
        One full cycle. Returns a skipped result if a cycle is already in
        flight for this site. Never raises past this point.
        """
        if self.lock.locked():
            logger.warning("[%s] Previous cycle still running; skipping this one", self.site.label)
            return CycleResult(site_id=self.site.id, timestamp=self.clock(), success=False,
                               skipped=True, error="previous cycle still running")

        async with self.lock:
            return await self._cycle()

    async def _cycle(self) -> CycleResult:
        now = self.clock()
        result = CycleResult(site_id=self.site.id, timestamp=now)

        devices: List[DeviceTrafficRecord] = []
        try:
            switch_results = await self.collect()
            devices = self.merge(switch_results)
            result.failed_switches = [r.switch_name or r.host for r in switch_results if not r.success]
        except Exception as exc:
            logger.exception("[%s] Collection failed", self.site.label)
            result.success = False
            result.error = str(InternalError(f"collection failed: {exc}"))

        if self._stopped:
            logger.info("[%s] Polling stopped; discarding cycle results", self.site.label)
            result.success = False
            result.error = "polling stopped; cycle results discarded"
            return result

        result.devices_seen = len(devices)
        try:
            summary = self.tracker.update(
                devices,
                self.global_settings,
                now,
                threshold_kbps=self.site.threshold(self.global_settings),
            )
            if not summary.replayed:
                await self.history.record(
                    self.site.id,
                    HistorySample.at(now, summary.confirmed_count, summary.active_count),
                )
        except Exception as exc:
            logger.exception("[%s] Session update failed", self.site.label)
            result.success = False
            result.error = str(InternalError(f"session update failed: {exc}"))
            return result

        result.confirmed_count = summary.confirmed_count
        result.pending_count = summary.pending_count
        result.active_count = summary.active_count

        logger.info("[%s] Polled: %d confirmed, %d pending, %d active%s",
                    self.site.label, summary.confirmed_count, summary.pending_count,
                    summary.active_count,
                    f" ({len(result.failed_switches)} switch(es) failed)" if result.failed_switches else "")
        return result

    # -- timer ---------------------------------------------------------------

    def _spawn_cycle(self) -> None:
        task = asyncio.create_task(self.run_cycle())
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    async def _run_timer(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._stopped:
            self._spawn_cycle()
            next_tick += self.interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    def start(self) -> None:
        """Start the recurring timer; the first cycle runs immediately."""
        if self._timer is None:
            self._stopped = False
            self._timer = asyncio.create_task(self._run_timer(), name=f"poll-site-{self.site.id}")
            logger.info("Starting polling for site: %s (every %gs)", self.site.label, self.interval)

    def stop(self) -> None:
        """Cancel the timer. In-flight cycles finish but their results are discarded."""
        self._stopped = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def busy(self) -> bool:
        return bool(self._cycles)

    async def wait_idle(self) -> None:
        if self._cycles:
            await asyncio.gather(*list(self._cycles), return_exceptions=True)


class PollingService:
    """
    Owns every piece of polling state for the process: counter cache,
    session trackers, history, per-site locks and timers.

    Created once at application startup; `shutdown()` stops everything.
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        history: Optional[HistoryRecorder] = None,
        clock: Callable[[], datetime] = datetime.now,
        switch_timeout: Optional[float] = None,
    ):
        self.client_factory = client_factory or SnmpClientFactory(
            use_stub=settings.use_snmp_stub,
            timeout=settings.snmp_timeout_seconds,
            retries=settings.snmp_retries,
        )
        self.history = history or HistoryRecorder(capacity=settings.history_capacity)
        self.clock = clock
        self.switch_timeout = settings.switch_poll_timeout_seconds if switch_timeout is None else switch_timeout

        self.counter_cache = CounterCache()
        self.global_settings = GlobalSettings()
        self.sites: Dict[str, SiteConfig] = {}

        self._trackers: Dict[str, PresenceSessionTracker] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._pollers: Dict[str, SitePoller] = {}
        self._retired: List[SitePoller] = []

    # -- lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._pollers)

    def active_sites(self) -> List[str]:
        return list(self._pollers.keys())

    def tracker(self, site_id: str) -> PresenceSessionTracker:
        tracker = self._trackers.get(site_id)
        if tracker is None:
            tracker = PresenceSessionTracker(site_id)
            self._trackers[site_id] = tracker
        return tracker

    def _poller_for(self, site: SiteConfig) -> SitePoller:
        lock = self._locks.setdefault(site.id, asyncio.Lock())
        return SitePoller(
            site=site,
            global_settings=self.global_settings,
            tracker=self.tracker(site.id),
            history=self.history,
            counter_cache=self.counter_cache,
            client_factory=self.client_factory,
            lock=lock,
            switch_timeout=self.switch_timeout,
            clock=self.clock,
        )

    def start(self, sites: Sequence[Any], global_settings: Any = None) -> List[str]:
        """
        (Re)start polling for every enabled site.

        Everything is validated before any running timer is touched, so a
        bad config leaves the current polling untouched.
        """
        parsed_sites = parse_sites(sites)
        parsed_settings = parse_global_settings(global_settings) if global_settings is not None \
            else self.global_settings

        self.stop()
        self.global_settings = parsed_settings
        self.sites = {site.id: site for site in parsed_sites}

        for site in parsed_sites:
            if not site.enabled:
                continue
            self.history.prime(site.id)
            poller = self._poller_for(site)
            self._pollers[site.id] = poller
            poller.start()

        logger.info("Polling started for %d site(s)", len(self._pollers))
        return self.active_sites()

    def stop(self) -> None:
        if self._pollers:
            logger.info("Stopping all polling...")
        for poller in self._pollers.values():
            poller.stop()
            self._retired.append(poller)
        self._pollers.clear()
        self._retired = [p for p in self._retired if p.busy]

    async def shutdown(self) -> None:
        self.stop()
        for poller in list(self._retired):
            await poller.wait_idle()
        self._retired.clear()

    async def run_site_cycle(self, site_id: str) -> CycleResult:
        """Run one cycle for an active site right now (skipped if one is in flight)."""
        poller = self._pollers.get(site_id)
        if poller is None:
            raise ConfigurationError(f"site {site_id!r} is not being polled")
        return await poller.run_cycle()

    # -- ad-hoc switch polls ---------------------------------------------------

    async def poll_switch(self, switch: Any) -> SwitchPollResult:
        """Poll one switch outside any site; shares the counter cache."""
        switch = parse_switch(switch)
        poller = SitePoller(
            site=SiteConfig(id="adhoc", switches=[switch]),
            global_settings=self.global_settings,
            tracker=PresenceSessionTracker("adhoc"),
            history=self.history,
            counter_cache=self.counter_cache,
            client_factory=self.client_factory,
            lock=asyncio.Lock(),
            switch_timeout=self.switch_timeout,
            clock=self.clock,
        )
        return await poller.poll_switch(switch)

    async def poll_switches(self, switches: Sequence[Any]) -> List[SwitchPollResult]:
        if not switches:
            raise ConfigurationError("Missing required parameter: switches array")
        parsed = [parse_switch(sw) for sw in switches]
        return list(await asyncio.gather(*[self.poll_switch(sw) for sw in parsed]))

    # -- queries ---------------------------------------------------------------

    def get_sessions(self, site_id: str) -> Dict[str, Any]:
        sessions: List[PresenceSession] = []
        tracker = self._trackers.get(site_id)
        if tracker is not None:
            sessions = tracker.snapshot()
        confirmed = [s for s in sessions if s.confirmed]
        pending = [s for s in sessions if not s.confirmed]
        return {
            "site_id": site_id,
            "confirmed": confirmed,
            "pending": pending,
            "confirmed_count": len(confirmed),
            "pending_count": len(pending),
        }

    def get_history(self, site_id: str, limit: Optional[int] = None) -> List[HistorySample]:
        if limit is None:
            limit = settings.history_query_limit
        return self.history.recent(site_id, limit)

    def summary(self) -> List[Dict[str, Any]]:
        rows = []
        for site_id, tracker in self._trackers.items():
            counts = tracker.counts()
            rows.append({
                "site_id": site_id,
                "confirmed_count": counts["confirmed"],
                "pending_count": counts["pending"],
                "total_sessions": counts["total"],
            })
        return rows

    # -- counter cache administration --------------------------------------------

    def clear_counter_cache(self) -> None:
        self.counter_cache.clear()
        logger.info("Counter cache cleared")

    def inspect_counter_cache(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self.counter_cache),
            "keys": self.counter_cache.switch_keys(),
            "interfaces": len(self.counter_cache.entries()),
        }
