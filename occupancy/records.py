"""
Plain data records passed between the collector, the correlator and the
session tracker.

These are not ORM models; they live for a single poll cycle.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional


class OperStatus(str, Enum):
    UP = "up"
    DOWN = "down"
    OTHER = "other"

    @classmethod
    def from_snmp(cls, value: int) -> "OperStatus":
        # IF-MIB ifOperStatus: 1=up, 2=down, 3..7 testing/unknown/dormant/...
        if value == 1:
            return cls.UP
        if value == 2:
            return cls.DOWN
        return cls.OTHER


@dataclass
class InterfaceSample:
    if_index: int
    descr: str = ""
    oper_status: OperStatus = OperStatus.DOWN
    speed_bps: int = 0
    in_octets: int = 0
    out_octets: int = 0
    captured_at: Optional[datetime] = None


@dataclass(frozen=True)
class ForwardingEntry:
    mac: str
    bridge_port: int


@dataclass
class DeviceTrafficRecord:
    """One device (MAC or synthetic port identity) seen on one access port."""

    if_index: int
    descr: str
    identity: str
    rate_kbps: float
    timestamp: datetime
    switch_id: Optional[str] = None
    switch_name: Optional[str] = None

    def tagged(self, switch_id: Optional[str], switch_name: Optional[str]) -> "DeviceTrafficRecord":
        return replace(self, switch_id=switch_id, switch_name=switch_name)


@dataclass
class SwitchPollResult:
    host: str
    timestamp: datetime
    success: bool = True
    devices: List[DeviceTrafficRecord] = field(default_factory=list)
    error: Optional[str] = None
    switch_id: Optional[str] = None
    switch_name: Optional[str] = None
