import asyncio
from datetime import datetime, timedelta

from occupancy.errors import TransportError
from occupancy.snmp_client import SnmpOids


def iface_rows(if_index, descr, in_octets=0, out_octets=0, oper=1, speed=1_000_000_000):
    base = SnmpOids.IF_ENTRY
    return [
        (f"{base}.1.{if_index}", if_index),
        (f"{base}.2.{if_index}", descr),
        (f"{base}.5.{if_index}", speed),
        (f"{base}.8.{if_index}", oper),
        (f"{base}.10.{if_index}", in_octets),
        (f"{base}.16.{if_index}", out_octets),
    ]


def fdb_row(mac, bridge_port):
    suffix = ".".join(str(o) for o in mac)
    return (f"{SnmpOids.DOT1D_TP_FDB_ENTRY}.2.{suffix}", bridge_port)


def bridge_row(bridge_port, if_index):
    return (f"{SnmpOids.DOT1D_BASE_PORT_IFINDEX}.{bridge_port}", if_index)


def vlan_row(if_index, vlan):
    return (f"{SnmpOids.VM_VLAN}.{if_index}", vlan)


class FakeSnmp:
    """
    In-memory SNMP agent.

    `rows` is a list of (oid, value); `failing` lists subtree OIDs whose
    walk raises `error` (TransportError by default); `gate` (an
    asyncio.Event) holds every walk until it is set.
    """

    def __init__(self, host="10.0.0.1", rows=None, failing=(), gate=None, delay=0.0, error=None):
        self.host = host
        self.rows = list(rows or [])
        self.failing = set(failing)
        self.gate = gate
        self.delay = delay
        self.error = error
        self.closed = False
        self.walked = []

    def set_counters(self, if_index, in_octets, out_octets):
        base = SnmpOids.IF_ENTRY
        for i, (oid, _) in enumerate(self.rows):
            if oid == f"{base}.10.{if_index}":
                self.rows[i] = (oid, in_octets)
            elif oid == f"{base}.16.{if_index}":
                self.rows[i] = (oid, out_octets)

    async def get(self, oids):
        rows = dict(self.rows)
        return {oid: rows[oid] for oid in oids if oid in rows}

    async def walk(self, oid):
        self.walked.append(oid)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if oid in self.failing:
            if self.error is not None:
                raise self.error
            raise TransportError(f"{self.host}: No SNMP response received before timeout")
        for name, value in self.rows:
            if name.startswith(oid + "."):
                yield name, value

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 4, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now
