from datetime import datetime, timedelta

import pytest

from occupancy.rates import CounterCache, CounterReading, counter_delta, estimate_rate_kbps

T0 = datetime(2024, 3, 4, 9, 0, 0)


def test_counter_delta_handles_single_wrap():
    assert counter_delta(4294967290, 5) == 11


def test_counter_delta_without_wrap():
    assert counter_delta(1000, 4000) == 3000
    assert counter_delta(7, 7) == 0


def test_first_reading_reports_zero():
    assert estimate_rate_kbps(None, CounterReading(10_000_000, 20_000_000, T0)) == 0.0


def test_zero_or_negative_elapsed_reports_zero():
    prev = CounterReading(0, 0, T0)
    assert estimate_rate_kbps(prev, CounterReading(5000, 5000, T0)) == 0.0
    assert estimate_rate_kbps(prev, CounterReading(5000, 5000, T0 - timedelta(seconds=1))) == 0.0


def test_rate_combines_both_directions():
    prev = CounterReading(1000, 2000, T0)
    cur = CounterReading(6000, 7000, T0 + timedelta(seconds=8))
    # (5000 + 5000) bytes * 8 / 8 s / 1000
    assert estimate_rate_kbps(prev, cur) == pytest.approx(10.0)


def test_rate_across_wrap_is_positive():
    prev = CounterReading(4294967290, 0, T0)
    cur = CounterReading(5, 0, T0 + timedelta(seconds=1))
    assert estimate_rate_kbps(prev, cur) == pytest.approx(11 * 8 / 1000)


def test_cache_first_observation_is_baseline():
    cache = CounterCache()
    assert cache.observe("10.0.0.1:161", 3, CounterReading(500, 500, T0)) == 0.0
    assert cache.get("10.0.0.1:161", 3) == CounterReading(500, 500, T0)

    rate = cache.observe("10.0.0.1:161", 3, CounterReading(1500, 1500, T0 + timedelta(seconds=2)))
    assert rate == pytest.approx(8.0)
    assert cache.get("10.0.0.1:161", 3).captured_at == T0 + timedelta(seconds=2)


def test_cache_keeps_switches_apart():
    cache = CounterCache()
    cache.observe("10.0.0.1:161", 7, CounterReading(0, 0, T0))
    # same ifIndex on another switch has no baseline yet
    assert cache.observe("10.0.0.2:161", 7, CounterReading(9000, 9000, T0 + timedelta(seconds=1))) == 0.0
    assert cache.get("10.0.0.1:161", 7).in_octets == 0
    assert sorted(cache.switch_keys()) == ["10.0.0.1:161", "10.0.0.2:161"]
    assert len(cache.entries()) == 2


def test_cache_clear():
    cache = CounterCache()
    cache.observe("a", 1, CounterReading(0, 0, T0))
    cache.clear()
    assert len(cache) == 0
    assert cache.get("a", 1) is None
