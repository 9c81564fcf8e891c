"""
Pydantic models ("schemas") for API responses.

We keep these separate from the in-memory records so the API layer
does not expose tracker internals. Traffic rates are rounded to 2 decimals.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class StatusOut(BaseModel):
    success: bool = True
    message: Optional[str] = None


class DeviceOut(BaseModel):
    """One device seen on an access port during a switch poll."""

    if_index: int
    if_descr: str
    mac_address: str
    traffic_rate_kbps: float
    timestamp: datetime
    switch_id: Optional[str] = None
    switch_name: Optional[str] = None


class SwitchPollOut(BaseModel):
    success: bool
    timestamp: datetime
    host: str
    switch_id: Optional[str] = None
    devices: List[DeviceOut]
    error: Optional[str] = None


class BatchPollOut(BaseModel):
    success: bool = True
    timestamp: datetime
    results: List[SwitchPollOut]


class SessionOut(BaseModel):
    """
    Display view of a presence session.

    - mac: MAC address or synthetic `port-<ifIndex>@<host>` identity
    - current_traffic_kbps: rate in the last cycle the device was detected
    """

    mac: str
    switch_id: Optional[str] = None
    switch_name: Optional[str] = None
    if_descr: Optional[str] = None
    first_seen: datetime
    last_seen: datetime
    last_active: datetime
    last_reset: datetime
    consecutive_poll_count: int
    confirmed: bool
    current_traffic_kbps: float


class SessionsOut(BaseModel):
    success: bool = True
    site_id: str
    confirmed: List[SessionOut]
    pending: List[SessionOut]
    confirmed_count: int
    pending_count: int
    last_update: datetime


class HistorySampleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    label: str
    epoch_ms: int
    confirmed_count: int
    active_count: int


class HistoryOut(BaseModel):
    success: bool = True
    site_id: str
    history: List[HistorySampleOut]


class SiteSummaryOut(BaseModel):
    site_id: str
    confirmed_count: int
    pending_count: int
    total_sessions: int


class SummaryOut(BaseModel):
    success: bool = True
    summary: List[SiteSummaryOut]
    last_update: datetime


class CacheInfoOut(BaseModel):
    success: bool = True
    cache_size: int
    keys: List[str]
    interfaces: int


class PollingStatusOut(BaseModel):
    success: bool = True
    message: str
    sites: List[str] = []


class CycleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    site_id: str
    timestamp: datetime
    success: bool
    skipped: bool
    confirmed_count: int
    pending_count: int
    active_count: int
    devices_seen: int
    failed_switches: List[str]
    error: Optional[str] = None
