"""
SNMP client abstraction.

The rest of the service only needs two primitives:

- get(oids)       -> {oid: value}
- walk(subtree)   -> async stream of (oid, value) under `subtree`

We support two modes:

1. Real SNMPv2c via pysnmp's asyncio API (USE_SNMP_STUB=0).
2. Stub mode: an in-memory simulated switch stack with access ports,
   an uplink, a VLAN interface, a forwarding table and growing counters.

This lets you:
- run everything locally without a real switch
- later flip a flag and talk to real switches
"""

from __future__ import annotations

import random
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from pysnmp.error import PySnmpError
from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
    walk_cmd,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from occupancy.config import SwitchConfig
from occupancy.errors import TransportError


class SnmpOids:
    # IF-MIB ifEntry (columns decoded in collector.IfColumn)
    IF_ENTRY = "1.3.6.1.2.1.2.2.1"

    # BRIDGE-MIB
    DOT1D_BASE_PORT_IFINDEX = "1.3.6.1.2.1.17.1.4.1.2"
    DOT1D_TP_FDB_ENTRY = "1.3.6.1.2.1.17.4.3.1"

    # CISCO-VLAN-MEMBERSHIP-MIB vmVlan
    VM_VLAN = "1.3.6.1.4.1.9.9.68.1.2.2.1.2"

    SYS_DESCR = "1.3.6.1.2.1.1.1.0"
    SYS_NAME = "1.3.6.1.2.1.1.5.0"


class SnmpClient:
    """Interface every client (real or stub) implements."""

    host: str

    async def get(self, oids: Sequence[str]) -> Dict[str, Any]:
        raise NotImplementedError

    def walk(self, oid: str) -> AsyncIterator[Tuple[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Real SNMP implementation (pysnmp asyncio)
# ---------------------------------------------------------------------------

_EMPTY_VALUES = (NoSuchObject, NoSuchInstance, EndOfMibView)


def _raise_for_errors(host: str, error_indication, error_status, error_index, var_binds) -> None:
    if error_indication:
        raise TransportError(f"{host}: {error_indication}")
    if error_status:
        where = error_index and var_binds[int(error_index) - 1][0] or "?"
        raise TransportError(f"{host}: {error_status.prettyPrint()} at {where}")


class PysnmpClient(SnmpClient):
    """
    SNMPv2c client for one switch.

    Timeouts and retries are handled by pysnmp; anything that still fails
    surfaces as TransportError.
    """

    def __init__(
        self,
        host: str,
        community: str,
        port: int = 161,
        timeout: float = 5.0,
        retries: int = 2,
    ):
        self.host = host
        self.community = community
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self._engine: Optional[SnmpEngine] = None

    @property
    def engine(self) -> SnmpEngine:
        if self._engine is None:
            self._engine = SnmpEngine()
        return self._engine

    async def _target(self) -> UdpTransportTarget:
        try:
            return await UdpTransportTarget.create(
                (self.host, self.port), timeout=self.timeout, retries=self.retries
            )
        except PySnmpError as exc:
            raise TransportError(f"{self.host}: {exc}") from exc

    async def get(self, oids: Sequence[str]) -> Dict[str, Any]:
        try:
            error_indication, error_status, error_index, var_binds = await get_cmd(
                self.engine,
                CommunityData(self.community, mpModel=1),  # SNMP v2c
                await self._target(),
                ContextData(),
                *[ObjectType(ObjectIdentity(oid)) for oid in oids],
            )
        except PySnmpError as exc:
            raise TransportError(f"{self.host}: {exc}") from exc

        _raise_for_errors(self.host, error_indication, error_status, error_index, var_binds)

        result = {}
        for name, value in var_binds:
            if isinstance(value, _EMPTY_VALUES):
                continue
            result[str(name)] = value
        return result

    async def walk(self, oid: str) -> AsyncIterator[Tuple[str, Any]]:
        try:
            async for error_indication, error_status, error_index, var_binds in walk_cmd(
                self.engine,
                CommunityData(self.community, mpModel=1),
                await self._target(),
                ContextData(),
                ObjectType(ObjectIdentity(oid)),
                lexicographicMode=False,
            ):
                _raise_for_errors(self.host, error_indication, error_status, error_index, var_binds)
                for name, value in var_binds:
                    if isinstance(value, _EMPTY_VALUES):
                        continue
                    yield str(name), value
        except PySnmpError as exc:
            raise TransportError(f"{self.host}: {exc}") from exc

    def close(self) -> None:
        if self._engine is not None:
            self._engine.close_dispatcher()
            self._engine = None


# ---------------------------------------------------------------------------
# Stub implementation: a simulated switch stack for demo purposes
# ---------------------------------------------------------------------------

PORTS_PER_MEMBER = 48


class StubSwitch:
    """
    Fake SNMP agent state for one host.

    Layout per stack member `m`:
    - GigabitEthernet{m}/0/1..48  ifIndex m*1000+p, about a third of them
      up with one or two learned MACs
    - TenGigabitEthernet{m}/1/1   ifIndex m*1000+900 (uplink, always up)
    Plus Vlan1 at ifIndex 1. Bridge port numbers are 1..N over the
    physical ports in order.
    """

    def __init__(self, host: str, stack_members: int = 1):
        self.host = host
        self._rng = random.Random(host)
        self.interfaces: Dict[int, Dict[str, Any]] = {}
        self.bridge_ports: Dict[int, int] = {}
        self.fdb: Dict[Tuple[int, ...], int] = {}
        self.vlans: Dict[int, int] = {}

        self._add_interface(1, "Vlan1", up=True, busy=False)

        bridge_port = 0
        for member in range(1, stack_members + 1):
            for port in range(1, PORTS_PER_MEMBER + 1):
                if_index = member * 1000 + port
                up = self._rng.random() < 0.35
                self._add_interface(if_index, f"GigabitEthernet{member}/0/{port}", up=up, busy=up)
                bridge_port += 1
                self.bridge_ports[bridge_port] = if_index
                self.vlans[if_index] = 10 if port % 2 else 20
                if up:
                    for _ in range(self._rng.choice((1, 1, 1, 2))):
                        mac = (0x00, 0x1B, 0x63) + tuple(self._rng.randrange(256) for _ in range(3))
                        self.fdb[mac] = bridge_port

            uplink = member * 1000 + 900
            self._add_interface(uplink, f"TenGigabitEthernet{member}/1/1", up=True, busy=True)
            bridge_port += 1
            self.bridge_ports[bridge_port] = uplink

    def _add_interface(self, if_index: int, descr: str, up: bool, busy: bool) -> None:
        self.interfaces[if_index] = {
            "descr": descr,
            "speed": 10_000_000_000 if descr.startswith("TenGig") else 1_000_000_000,
            "oper_status": 1 if up else 2,
            "in_octets": self._rng.randint(1_000_000, 4_000_000_000),
            "out_octets": self._rng.randint(1_000_000, 4_000_000_000),
            "busy": busy,
        }

    def tick(self) -> None:
        """Advance counters to simulate traffic since the last walk."""
        for st in self.interfaces.values():
            if st["oper_status"] != 1:
                continue
            if st["busy"] and self._rng.random() < 0.8:
                low, high = 200_000, 5_000_000
            else:
                low, high = 0, 2_000
            st["in_octets"] = (st["in_octets"] + self._rng.randint(low, high)) % 2 ** 32
            st["out_octets"] = (st["out_octets"] + self._rng.randint(low, high)) % 2 ** 32

    def table(self) -> List[Tuple[str, Any]]:
        rows: List[Tuple[str, Any]] = []
        base = SnmpOids.IF_ENTRY
        for if_index, st in self.interfaces.items():
            rows += [
                (f"{base}.1.{if_index}", if_index),
                (f"{base}.2.{if_index}", st["descr"]),
                (f"{base}.5.{if_index}", st["speed"] % 2 ** 32),
                (f"{base}.8.{if_index}", st["oper_status"]),
                (f"{base}.10.{if_index}", st["in_octets"]),
                (f"{base}.16.{if_index}", st["out_octets"]),
            ]
        for bridge_port, if_index in self.bridge_ports.items():
            rows.append((f"{SnmpOids.DOT1D_BASE_PORT_IFINDEX}.{bridge_port}", if_index))
        for mac, bridge_port in self.fdb.items():
            suffix = ".".join(str(o) for o in mac)
            rows.append((f"{SnmpOids.DOT1D_TP_FDB_ENTRY}.2.{suffix}", bridge_port))
            rows.append((f"{SnmpOids.DOT1D_TP_FDB_ENTRY}.3.{suffix}", 3))  # learned
        for if_index, vlan in self.vlans.items():
            rows.append((f"{SnmpOids.VM_VLAN}.{if_index}", vlan))
        rows.append((SnmpOids.SYS_DESCR, "Simulated switch stack"))
        rows.append((SnmpOids.SYS_NAME, self.host))
        rows.sort(key=lambda row: tuple(int(p) for p in row[0].split(".")))
        return rows


class StubSnmpClient(SnmpClient):
    """Serves get/walk from a StubSwitch."""

    def __init__(self, switch: StubSwitch):
        self.host = switch.host
        self._switch = switch

    async def get(self, oids: Sequence[str]) -> Dict[str, Any]:
        rows = dict(self._switch.table())
        return {oid: rows[oid] for oid in oids if oid in rows}

    async def walk(self, oid: str) -> AsyncIterator[Tuple[str, Any]]:
        if oid == SnmpOids.IF_ENTRY:
            self._switch.tick()
        prefix = oid + "."
        for name, value in self._switch.table():
            if name.startswith(prefix):
                yield name, value


# ---------------------------------------------------------------------------
# Public factory used by the polling service
# ---------------------------------------------------------------------------


class SnmpClientFactory:
    """
    Builds one client per switch poll.

    In stub mode the simulated switches are kept here so their counters
    keep growing between polls.
    """

    def __init__(self, use_stub: bool, timeout: float = 5.0, retries: int = 2):
        self.use_stub = use_stub
        self.timeout = timeout
        self.retries = retries
        self._stub_switches: Dict[str, StubSwitch] = {}

    def __call__(self, switch: SwitchConfig) -> SnmpClient:
        if self.use_stub:
            stub = self._stub_switches.get(switch.cache_key)
            if stub is None:
                stub = StubSwitch(switch.host, switch.stack_members)
                self._stub_switches[switch.cache_key] = stub
            return StubSnmpClient(stub)

        return PysnmpClient(
            host=switch.host,
            community=switch.community,
            port=switch.port,
            timeout=self.timeout,
            retries=self.retries,
        )
