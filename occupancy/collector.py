"""
Per-switch device activity collector.

For one switch this module:
- walks the IF-MIB interface table, the BRIDGE-MIB forwarding table, the
  bridge-port -> ifIndex map and (best effort) the Cisco vmVlan table,
  all concurrently
- keeps only "up" physical access ports that are not excluded by port or VLAN
- turns counter deltas into kbps via the shared CounterCache
- correlates MACs to ports and returns one DeviceTrafficRecord per device
"""

import asyncio
import logging
import re
from datetime import datetime
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from occupancy.config import SwitchConfig, settings
from occupancy.correlator import PortCorrelator
from occupancy.errors import MalformedReplyError, TransportError
from occupancy.rates import CounterCache, CounterReading
from occupancy.records import (
    DeviceTrafficRecord,
    ForwardingEntry,
    InterfaceSample,
    OperStatus,
    SwitchPollResult,
)
from occupancy.snmp_client import SnmpClient, SnmpOids

logger = logging.getLogger(__name__)

DEFAULT_VLAN = 1


class IfColumn(IntEnum):
    """IF-MIB ifEntry columns we read (1.3.6.1.2.1.2.2.1.<column>.<ifIndex>)."""

    DESCR = 2
    SPEED = 5
    OPER_STATUS = 8
    IN_OCTETS = 10
    OUT_OCTETS = 16


class FdbColumn(IntEnum):
    """dot1dTpFdbEntry columns (1.3.6.1.2.1.17.4.3.1.<column>.<6 MAC octets>)."""

    ADDRESS = 1
    PORT = 2
    STATUS = 3


# ---------------------------------------------------------------------------
# OID / value decoding
# ---------------------------------------------------------------------------


def oid_suffix(oid: str, base: str) -> Tuple[int, ...]:
    """
    Numeric arcs of `oid` below `base`.

    Raises MalformedReplyError if `oid` is not under `base` or has
    non-numeric arcs.
    """
    oid = oid.lstrip(".")
    if not oid.startswith(base + "."):
        raise MalformedReplyError(f"{oid} is not under {base}")
    try:
        return tuple(int(p) for p in oid[len(base) + 1:].split("."))
    except ValueError as exc:
        raise MalformedReplyError(f"non-numeric OID {oid}") from exc


def as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedReplyError(f"expected an integer, got {value!r}") from exc


def as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace").replace("\x00", "")
    if hasattr(value, "asOctets"):
        return value.asOctets().decode("utf-8", "replace").replace("\x00", "")
    return str(value)


def format_mac(octets: Sequence[int]) -> str:
    if len(octets) != 6 or any(not 0 <= o <= 255 for o in octets):
        raise MalformedReplyError(f"bad MAC octets {tuple(octets)}")
    return ":".join("%02X" % o for o in octets)


# ---------------------------------------------------------------------------
# Interface filters
# ---------------------------------------------------------------------------


def is_access_port(descr: str, pattern: str) -> bool:
    return re.match(pattern, descr, re.IGNORECASE) is not None


def is_excluded_port(descr: str, excluded_ports: Sequence[str], prefix: str) -> bool:
    """
    Exact match, vendor-prefixed match ("1/0/1" -> "GigabitEthernet1/0/1"),
    or case-insensitive substring.
    """
    lowered = descr.lower()
    for entry in excluded_ports:
        if descr == entry or descr == f"{prefix}{entry}" or entry.lower() in lowered:
            return True
    return False


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------


class DeviceActivityCollector:
    """
    Polls one switch and produces device traffic records.

    The counter cache is shared across polls (and switches); it is keyed by
    the switch's cache_key so ifIndex values never collide between switches.
    """

    def __init__(
        self,
        switch: SwitchConfig,
        client: SnmpClient,
        counter_cache: CounterCache,
        access_port_pattern: Optional[str] = None,
        access_port_prefix: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.switch = switch
        self.client = client
        self.counter_cache = counter_cache
        self.access_port_pattern = access_port_pattern or settings.access_port_pattern
        self.access_port_prefix = access_port_prefix or settings.access_port_prefix
        self.clock = clock

    # -- walks --------------------------------------------------------------

    async def get_interfaces(self) -> Dict[int, InterfaceSample]:
        """Walk ifEntry. Transport errors propagate: no interfaces, no poll."""
        interfaces: Dict[int, InterfaceSample] = {}
        columns = {c.value: c for c in IfColumn}

        async for oid, value in self.client.walk(SnmpOids.IF_ENTRY):
            try:
                arcs = oid_suffix(oid, SnmpOids.IF_ENTRY)
                if len(arcs) != 2 or arcs[0] not in columns:
                    continue
                column, if_index = columns[arcs[0]], arcs[1]
                sample = interfaces.setdefault(if_index, InterfaceSample(if_index=if_index))

                if column is IfColumn.DESCR:
                    sample.descr = as_text(value)
                elif column is IfColumn.SPEED:
                    sample.speed_bps = as_int(value)
                elif column is IfColumn.OPER_STATUS:
                    sample.oper_status = OperStatus.from_snmp(as_int(value))
                elif column is IfColumn.IN_OCTETS:
                    sample.in_octets = as_int(value)
                elif column is IfColumn.OUT_OCTETS:
                    sample.out_octets = as_int(value)
            except MalformedReplyError as exc:
                logger.debug("%s: skipping interface value %s: %s", self.switch.host, oid, exc)

        logger.debug("Found %d interfaces on %s", len(interfaces), self.switch.host)
        return interfaces

    async def get_forwarding_table(self) -> List[ForwardingEntry]:
        entries: List[ForwardingEntry] = []

        async for oid, value in self.client.walk(SnmpOids.DOT1D_TP_FDB_ENTRY):
            try:
                arcs = oid_suffix(oid, SnmpOids.DOT1D_TP_FDB_ENTRY)
                if len(arcs) != 7 or arcs[0] != FdbColumn.PORT:
                    continue
                entries.append(ForwardingEntry(mac=format_mac(arcs[1:]), bridge_port=as_int(value)))
            except MalformedReplyError as exc:
                logger.debug("%s: skipping FDB value %s: %s", self.switch.host, oid, exc)

        logger.debug("Found %d forwarding entries on %s", len(entries), self.switch.host)
        return entries

    async def get_bridge_port_map(self) -> Dict[int, int]:
        bridge_map: Dict[int, int] = {}

        async for oid, value in self.client.walk(SnmpOids.DOT1D_BASE_PORT_IFINDEX):
            try:
                arcs = oid_suffix(oid, SnmpOids.DOT1D_BASE_PORT_IFINDEX)
                if len(arcs) != 1:
                    continue
                bridge_map[arcs[0]] = as_int(value)
            except MalformedReplyError as exc:
                logger.debug("%s: skipping bridge map value %s: %s", self.switch.host, oid, exc)

        logger.debug("Found %d bridge port mappings on %s", len(bridge_map), self.switch.host)
        return bridge_map

    async def get_vlan_map(self) -> Dict[int, int]:
        vlan_map: Dict[int, int] = {}

        async for oid, value in self.client.walk(SnmpOids.VM_VLAN):
            try:
                arcs = oid_suffix(oid, SnmpOids.VM_VLAN)
                if len(arcs) != 1:
                    continue
                vlan_map[arcs[0]] = as_int(value) or DEFAULT_VLAN
            except MalformedReplyError as exc:
                logger.debug("%s: skipping VLAN value %s: %s", self.switch.host, oid, exc)

        return vlan_map

    async def _best_effort(self, name: str, walk, empty):
        """Run an optional walk; transport failures degrade to an empty result."""
        try:
            return await walk()
        except TransportError as exc:
            logger.warning("%s: %s walk failed, continuing without it: %s", self.switch.host, name, exc)
            return empty

    # -- processing ---------------------------------------------------------

    def qualifies(self, sample: InterfaceSample, vlan_map: Dict[int, int]) -> bool:
        if sample.oper_status is not OperStatus.UP:
            return False
        if not is_access_port(sample.descr, self.access_port_pattern):
            return False
        if self.switch.excluded_ports and is_excluded_port(
            sample.descr, self.switch.excluded_ports, self.access_port_prefix
        ):
            logger.debug("Skipping excluded port: %s", sample.descr)
            return False
        if self.switch.excluded_vlans:
            vlan = vlan_map.get(sample.if_index, DEFAULT_VLAN)
            if vlan in self.switch.excluded_vlans:
                logger.debug("Skipping port %s on excluded VLAN %s", sample.descr, vlan)
                return False
        return True

    def process(
        self,
        interfaces: Dict[int, InterfaceSample],
        forwarding: List[ForwardingEntry],
        bridge_map: Dict[int, int],
        vlan_map: Dict[int, int],
        now: datetime,
    ) -> List[DeviceTrafficRecord]:
        correlator = PortCorrelator(self.switch.host, forwarding, bridge_map)
        devices: List[DeviceTrafficRecord] = []

        for if_index in sorted(interfaces):
            sample = interfaces[if_index]
            if not self.qualifies(sample, vlan_map):
                continue

            sample.captured_at = now
            previous = self.counter_cache.get(self.switch.cache_key, if_index)
            rate = self.counter_cache.observe(
                self.switch.cache_key,
                if_index,
                CounterReading(sample.in_octets, sample.out_octets, now),
            )
            if previous is None:
                logger.debug("First poll for interface %s (%s) - storing baseline", if_index, sample.descr)
            elif rate > 1:
                logger.debug("Interface %s (%s): %.2f kbps", if_index, sample.descr, rate)

            devices.extend(correlator.records_for(if_index, sample.descr, rate, now))

        return devices

    async def poll(self, now: Optional[datetime] = None) -> SwitchPollResult:
        """
        Poll the switch once.

        Never raises for SNMP failures: a failed interface walk yields
        success=False and no devices.
        """
        host = self.switch.host
        try:
            walks = await asyncio.gather(
                self.get_interfaces(),
                self._best_effort("forwarding table", self.get_forwarding_table, []),
                self._best_effort("bridge port", self.get_bridge_port_map, {}),
                self._best_effort("VLAN", self.get_vlan_map, {}),
                return_exceptions=True,
            )
        finally:
            self.client.close()

        interfaces, forwarding, bridge_map, vlan_map = walks
        if isinstance(interfaces, TransportError):
            logger.warning("Error polling %s: %s", host, interfaces)
            return SwitchPollResult(
                host=host,
                timestamp=now or self.clock(),
                success=False,
                error=str(interfaces),
                switch_id=self.switch.id,
                switch_name=self.switch.name,
            )
        for result in walks:
            if isinstance(result, BaseException):
                raise result

        # capture time is taken after the walks complete
        now = now or self.clock()
        devices = self.process(interfaces, forwarding, bridge_map, vlan_map, now)
        logger.info("%s: %d devices with traffic/MACs", host, len(devices))

        return SwitchPollResult(
            host=host,
            timestamp=now,
            devices=devices,
            switch_id=self.switch.id,
            switch_name=self.switch.name,
        )
