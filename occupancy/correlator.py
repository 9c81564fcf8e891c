"""
MAC-to-port correlation.

The forwarding table (dot1dTpFdbTable) tells us which *bridge port* a MAC
was learned on; dot1dBasePortIfIndex maps bridge ports to ifIndex values.
Combining the two gives us the MACs behind each interface.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Mapping

from occupancy.records import DeviceTrafficRecord, ForwardingEntry


def synthetic_identity(if_index: int, host: str) -> str:
    """Stand-in identity for a port that carries traffic but has no FDB entry."""
    return f"port-{if_index}@{host}"


class PortCorrelator:
    """
    Groups forwarding entries by the interface they resolve to.

    Entries whose bridge port is not in the bridge map are dropped.
    """

    def __init__(
        self,
        host: str,
        forwarding: Iterable[ForwardingEntry],
        bridge_map: Mapping[int, int],
    ):
        self.host = host
        self._macs_by_if: Dict[int, List[str]] = defaultdict(list)

        for entry in forwarding:
            if_index = bridge_map.get(entry.bridge_port)
            if if_index is None:
                continue
            if entry.mac not in self._macs_by_if[if_index]:
                self._macs_by_if[if_index].append(entry.mac)

    def macs_on(self, if_index: int) -> List[str]:
        return list(self._macs_by_if.get(if_index, []))

    def identities_on(self, if_index: int, rate_kbps: float) -> List[str]:
        macs = self.macs_on(if_index)
        if not macs and rate_kbps > 0:
            return [synthetic_identity(if_index, self.host)]
        return macs

    def records_for(
        self,
        if_index: int,
        descr: str,
        rate_kbps: float,
        timestamp: datetime,
    ) -> List[DeviceTrafficRecord]:
        """Split the interface rate evenly across every identity behind it."""
        identities = self.identities_on(if_index, rate_kbps)
        if not identities:
            return []

        share = rate_kbps / len(identities)
        return [
            DeviceTrafficRecord(
                if_index=if_index,
                descr=descr or f"Interface {if_index}",
                identity=identity,
                rate_kbps=share,
                timestamp=timestamp,
            )
            for identity in identities
        ]
