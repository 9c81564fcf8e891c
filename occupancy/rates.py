"""
Traffic-rate estimation from interface octet counters.

IF-MIB ifInOctets / ifOutOctets are 32-bit Counter32 values, so a
switch that has moved more than 4 GiB since the last sample will have
wrapped. We assume at most one wrap between two polls.

The CounterCache keeps the previous sample per (switch, ifIndex) so the
next poll can compute a delta.
"""

from datetime import datetime
from typing import Dict, List, NamedTuple, Optional, Tuple

COUNTER32_MODULUS = 2 ** 32


class CounterReading(NamedTuple):
    in_octets: int
    out_octets: int
    captured_at: datetime


def counter_delta(previous: int, current: int) -> int:
    """
    Difference between two Counter32 readings, assuming at most one wrap.

    previous=4294967290, current=5 -> 11
    """
    return (current - previous) % COUNTER32_MODULUS


def estimate_rate_kbps(
    previous: Optional[CounterReading],
    current: CounterReading,
) -> float:
    """
    Combined in+out rate in kbps between two readings.

    Returns 0.0 when there is no previous reading or when no time has
    elapsed; the caller is expected to store `current` as the new baseline.
    """
    if previous is None:
        return 0.0

    elapsed = (current.captured_at - previous.captured_at).total_seconds()
    if elapsed <= 0:
        return 0.0

    in_delta = counter_delta(previous.in_octets, current.in_octets)
    out_delta = counter_delta(previous.out_octets, current.out_octets)
    return ((in_delta + out_delta) * 8) / elapsed / 1000


class CounterCache:
    """
    Previous counter readings keyed by (switch identity, ifIndex).

    Two switches that reuse the same ifIndex never share an entry.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Dict[int, CounterReading]] = {}

    def observe(self, switch_key: str, if_index: int, reading: CounterReading) -> float:
        """Record `reading` as the new baseline and return the rate since the old one."""
        per_switch = self._entries.setdefault(switch_key, {})
        rate = estimate_rate_kbps(per_switch.get(if_index), reading)
        per_switch[if_index] = reading
        return rate

    def get(self, switch_key: str, if_index: int) -> Optional[CounterReading]:
        return self._entries.get(switch_key, {}).get(if_index)

    def clear(self) -> None:
        self._entries.clear()

    def switch_keys(self) -> List[str]:
        return list(self._entries.keys())

    def entries(self) -> List[Tuple[str, int, CounterReading]]:
        return [
            (switch_key, if_index, reading)
            for switch_key, per_switch in self._entries.items()
            for if_index, reading in per_switch.items()
        ]

    def __len__(self) -> int:
        return len(self._entries)
