import asyncio

import pytest

from fakes import FakeClock, FakeSnmp, bridge_row, fdb_row, iface_rows
from occupancy.config import GlobalSettings, SiteConfig
from occupancy.errors import ConfigurationError
from occupancy.history import HistoryRecorder
from occupancy.poller import PollingService, SitePoller
from occupancy.rates import CounterCache
from occupancy.sessions import PresenceSessionTracker
from occupancy.snmp_client import SnmpOids

MAC_A = (0x00, 0x11, 0x22, 0x33, 0x44, 0x55)


def _rows_with_mac():
    return iface_rows(1001, "GigabitEthernet1/0/1", 0, 0) + [bridge_row(1, 1001), fdb_row(MAC_A, 1)]


def _rows_without_mac():
    return iface_rows(1001, "GigabitEthernet1/0/1", 0, 0)


def _site_dict(**kwargs):
    site = {
        "id": "hq",
        "name": "HQ",
        "refreshInterval": 3600,
        "switches": [
            {"id": "sw1", "name": "Floor 1", "ipAddress": "10.0.0.1", "community": "public"},
            {"id": "sw2", "name": "Floor 2", "ipAddress": "10.0.0.2", "community": "public"},
        ],
    }
    site.update(kwargs)
    return site


def _clients(sw1=None, sw2=None):
    return {
        "10.0.0.1": sw1 or FakeSnmp("10.0.0.1", _rows_with_mac()),
        "10.0.0.2": sw2 or FakeSnmp("10.0.0.2", _rows_without_mac()),
    }


def _site_poller(clients, clock, switch_timeout=5.0, **site_kwargs):
    return SitePoller(
        site=SiteConfig.model_validate(_site_dict(**site_kwargs)),
        global_settings=GlobalSettings(),
        tracker=PresenceSessionTracker("hq"),
        history=HistoryRecorder(),
        counter_cache=CounterCache(),
        client_factory=lambda sw: clients[sw.host],
        lock=asyncio.Lock(),
        switch_timeout=switch_timeout,
        clock=clock,
    )


def _bump(clients, amount=10**6):
    for snmp in clients.values():
        snmp.set_counters(1001, amount, amount)


def test_cycle_merges_switches_and_feeds_tracker():
    clients = _clients()
    clock = FakeClock()
    poller = _site_poller(clients, clock)

    async def run():
        first = await poller.run_cycle()
        clock.advance(seconds=90)
        _bump(clients)
        second = await poller.run_cycle()
        return first, second

    first, second = asyncio.run(run())

    assert first.success and first.active_count == 0
    # 2e6 bytes * 8 / 90 s / 1000 ~ 178 kbps on each switch
    assert second.active_count == 2
    assert second.pending_count == 2
    assert "00:11:22:33:44:55" in poller.tracker
    assert "port-1001@10.0.0.2" in poller.tracker
    session = poller.tracker.get("port-1001@10.0.0.2")
    assert session.switch_id == "sw2"
    assert session.switch_name == "Floor 2"
    assert [s.confirmed_count for s in poller.history.recent("hq")] == [0, 0]
    assert [s.active_count for s in poller.history.recent("hq")] == [0, 2]


def test_failed_switch_does_not_fail_the_site():
    clients = _clients(sw2=FakeSnmp("10.0.0.2", _rows_without_mac(), failing={SnmpOids.IF_ENTRY}))
    clock = FakeClock()
    poller = _site_poller(clients, clock)

    async def run():
        await poller.run_cycle()
        clock.advance(seconds=90)
        _bump(clients)
        return await poller.run_cycle()

    result = asyncio.run(run())
    assert result.success
    assert result.failed_switches == ["Floor 2"]
    assert result.active_count == 1
    assert "00:11:22:33:44:55" in poller.tracker


def test_slow_switch_times_out():
    clients = _clients(sw2=FakeSnmp("10.0.0.2", _rows_without_mac(), delay=1.0))
    poller = _site_poller(clients, FakeClock(), switch_timeout=0.05)

    result = asyncio.run(poller.run_cycle())
    assert result.success
    assert result.failed_switches == ["Floor 2"]


def test_unexpected_switch_error_becomes_a_failed_result():
    def factory(sw):
        raise RuntimeError("boom")

    poller = _site_poller({}, FakeClock())
    poller.client_factory = factory

    results = asyncio.run(poller.collect())
    assert [r.success for r in results] == [False, False]
    assert "RuntimeError" in results[0].error


def test_overlapping_cycle_is_skipped():
    async def run():
        gate = asyncio.Event()
        clients = _clients(sw1=FakeSnmp("10.0.0.1", _rows_with_mac(), gate=gate))
        poller = _site_poller(clients, FakeClock())

        first = asyncio.create_task(poller.run_cycle())
        await asyncio.sleep(0.01)
        second = await poller.run_cycle()
        gate.set()
        return await first, second, poller

    first, second, poller = asyncio.run(run())
    assert second.skipped
    assert first.success and not first.skipped
    assert len(poller.history.recent("hq")) == 1


def test_stop_discards_in_flight_cycle():
    async def run():
        gate = asyncio.Event()
        clients = _clients(sw1=FakeSnmp("10.0.0.1", _rows_with_mac(), gate=gate))
        poller = _site_poller(clients, FakeClock())

        task = asyncio.create_task(poller.run_cycle())
        await asyncio.sleep(0.01)
        poller.stop()
        gate.set()
        return await task, poller

    result, poller = asyncio.run(run())
    assert not result.success
    assert "discarded" in result.error
    assert poller.history.recent("hq") == []


# ---------------------------------------------------------------------------
# PollingService
# ---------------------------------------------------------------------------


def _service(clients, clock):
    return PollingService(
        client_factory=lambda sw: clients[sw.host],
        history=HistoryRecorder(),
        clock=clock,
        switch_timeout=5.0,
    )


async def _wait_for_history(service, site_id, count=1):
    for _ in range(200):
        if len(service.get_history(site_id)) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("no history recorded")


def test_service_start_runs_first_cycle_and_confirms():
    clients = _clients()
    clock = FakeClock()
    service = _service(clients, clock)

    async def run():
        active = service.start([_site_dict()], {"confirmationPolls": 2, "trafficThreshold": 50})
        await _wait_for_history(service, "hq")
        for _ in range(2):
            clock.advance(seconds=90)
            _bump(clients, amount=clock.now.minute * 10**6)
            await service.run_site_cycle("hq")
        sessions = service.get_sessions("hq")
        await service.shutdown()
        return active, sessions

    active, sessions = asyncio.run(run())
    assert active == ["hq"]
    assert sessions["confirmed_count"] == 2
    assert sessions["pending_count"] == 0
    assert {s.identity for s in sessions["confirmed"]} == {"00:11:22:33:44:55", "port-1001@10.0.0.2"}
    assert len(service.get_history("hq")) == 3
    assert service.summary() == [
        {"site_id": "hq", "confirmed_count": 2, "pending_count": 0, "total_sessions": 2}
    ]
    assert not service.running


def test_service_rejects_bad_config_and_keeps_running():
    clients = _clients()
    service = _service(clients, FakeClock())

    async def run():
        service.start([_site_dict()])
        with pytest.raises(ConfigurationError):
            service.start([_site_dict(), _site_dict()])
        with pytest.raises(ConfigurationError):
            service.start([_site_dict()], {"sessionResetTime": "25:00"})
        still_running = service.active_sites()
        await service.shutdown()
        return still_running

    assert asyncio.run(run()) == ["hq"]


def test_disabled_sites_are_not_polled():
    service = _service(_clients(), FakeClock())

    async def run():
        active = service.start([_site_dict(enabled=False)])
        await service.shutdown()
        return active

    assert asyncio.run(run()) == []


def test_run_site_cycle_requires_active_site():
    service = _service(_clients(), FakeClock())
    with pytest.raises(ConfigurationError):
        asyncio.run(service.run_site_cycle("nowhere"))


def test_adhoc_polls_share_the_counter_cache():
    clients = _clients()
    clock = FakeClock()
    service = _service(clients, clock)

    async def run():
        first = await service.poll_switches([
            {"host": "10.0.0.1", "community": "public"},
            {"host": "10.0.0.2", "community": "public"},
        ])
        clock.advance(seconds=10)
        _bump(clients)
        second = await service.poll_switch({"host": "10.0.0.1", "community": "public"})
        return first, second

    first, second = asyncio.run(run())
    assert [r.success for r in first] == [True, True]
    assert second.devices[0].rate_kbps > 0

    info = service.inspect_counter_cache()
    assert info["cache_size"] == 2
    assert sorted(info["keys"]) == ["10.0.0.1:161", "10.0.0.2:161"]
    assert info["interfaces"] == 2

    service.clear_counter_cache()
    assert service.inspect_counter_cache()["cache_size"] == 0


def _broken(host):
    return FakeSnmp(host, _rows_without_mac(), failing={SnmpOids.IF_ENTRY}, error=RuntimeError("unexpected"))


def test_adhoc_poll_returns_failure_on_unexpected_error():
    clients = _clients(sw2=_broken("10.0.0.2"))
    service = _service(clients, FakeClock())

    async def run():
        single = await service.poll_switch({"host": "10.0.0.2", "community": "public"})
        batch = await service.poll_switches([
            {"host": "10.0.0.1", "community": "public"},
            {"host": "10.0.0.2", "community": "public"},
        ])
        return single, batch

    single, batch = asyncio.run(run())
    assert not single.success
    assert "RuntimeError: unexpected" in single.error
    assert [r.success for r in batch] == [True, False]
    assert clients["10.0.0.2"].closed


def test_unexpected_switch_error_in_a_cycle_fails_only_that_switch():
    clients = _clients(sw2=_broken("10.0.0.2"))
    poller = _site_poller(clients, FakeClock())

    result = asyncio.run(poller.run_cycle())
    assert result.success
    assert result.failed_switches == ["Floor 2"]


def test_adhoc_batch_requires_switches():
    service = _service(_clients(), FakeClock())
    with pytest.raises(ConfigurationError):
        asyncio.run(service.poll_switches([]))


def test_unknown_site_has_no_sessions_or_history():
    service = _service(_clients(), FakeClock())
    sessions = service.get_sessions("nowhere")
    assert sessions["confirmed"] == [] and sessions["pending"] == []
    assert service.get_history("nowhere") == []
