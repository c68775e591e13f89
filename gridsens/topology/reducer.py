"""Topology reduction: nodes and switches to calculation buses.

Nodes joined by closed, non-retained switches collapse into one
calculation bus (union-find). Retained switches survive the reduction and
become zero-impedance SWITCH branches, open or closed, so that
contingencies and remedial actions can operate on them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from gridsens.core.errors import StructuralError
from gridsens.topology.model import GridModel, Switch

logger = logging.getLogger(__name__)


@dataclass
class ReducedBus:
    """Set of nodes electrically merged by closed switches."""
    id: str
    num: int
    voltage_level_id: str
    node_ids: list[str] = field(default_factory=list)


@dataclass
class ReducedTopology:
    buses: list[ReducedBus]
    node_to_bus: dict[str, int]
    retained_switches: list[Switch]

    def bus_of(self, node_id: str) -> ReducedBus:
        return self.buses[self.node_to_bus[node_id]]


class _UnionFind:
    def __init__(self, items: Iterable[str]):
        self._parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        # Path compression
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Smallest id wins so the result does not depend on switch order
            if rb < ra:
                ra, rb = rb, ra
            self._parent[rb] = ra


def _referenced_nodes(grid: GridModel) -> Iterable[tuple[str, str]]:
    """Yield (element id, node id) for every node reference in the grid."""
    for line in grid.lines:
        yield line.id, line.node1
        yield line.id, line.node2
    for t2 in grid.two_windings_transformers:
        yield t2.id, t2.node1
        yield t2.id, t2.node2
        rtc = t2.ratio_tap_changer
        if rtc is not None and rtc.regulating_node is not None:
            yield t2.id, rtc.regulating_node
    for t3 in grid.three_windings_transformers:
        for leg in t3.legs:
            yield t3.id, leg.node
            rtc = leg.ratio_tap_changer
            if rtc is not None and rtc.regulating_node is not None:
                yield t3.id, rtc.regulating_node
    for dl in grid.dangling_lines:
        yield dl.id, dl.node
    for gen in grid.generators:
        yield gen.id, gen.node
        if gen.regulating_node is not None:
            yield gen.id, gen.regulating_node
    for load in grid.loads:
        yield load.id, load.node
    for shunt in grid.shunts:
        yield shunt.id, shunt.node
        if shunt.regulating_node is not None:
            yield shunt.id, shunt.regulating_node
    for station in (*grid.vsc_converter_stations, *grid.lcc_converter_stations):
        yield station.id, station.node


def validate_topology(grid: GridModel) -> None:
    """Raise StructuralError on any dangling reference."""
    vl_ids = {vl.id for vl in grid.voltage_levels}
    for node in grid.nodes:
        if node.voltage_level_id not in vl_ids:
            raise StructuralError(
                f"Node '{node.id}' references unknown voltage level '{node.voltage_level_id}'"
            )
    node_ids = {node.id for node in grid.nodes}
    for switch in grid.switches:
        for node_id in (switch.node1, switch.node2):
            if node_id not in node_ids:
                raise StructuralError(f"Switch '{switch.id}' references unknown node '{node_id}'")
        vl1 = grid.node(switch.node1).voltage_level_id
        vl2 = grid.node(switch.node2).voltage_level_id
        if vl1 != vl2:
            raise StructuralError(
                f"Switch '{switch.id}' connects voltage levels '{vl1}' and '{vl2}'"
            )
    for element_id, node_id in _referenced_nodes(grid):
        if node_id not in node_ids:
            raise StructuralError(f"Element '{element_id}' references unknown node '{node_id}'")
    for hvdc in grid.hvdc_lines:
        grid.converter_station(hvdc.converter1)
        grid.converter_station(hvdc.converter2)


def reduce_topology(grid: GridModel, retained_switch_ids: Iterable[str] = ()) -> ReducedTopology:
    """Merge nodes across closed non-retained switches.

    Args:
        grid: detailed grid model
        retained_switch_ids: switches kept as branches in addition to the
            ones flagged ``retained`` in the grid (typically switches named
            by contingencies or actions)

    Raises:
        StructuralError: on a reference to a missing node or voltage level.
    """
    validate_topology(grid)
    extra_retained = set(retained_switch_ids)
    unknown = extra_retained - {s.id for s in grid.switches}
    if unknown:
        raise StructuralError(f"Switch '{sorted(unknown)[0]}' not found")

    uf = _UnionFind(node.id for node in grid.nodes)
    retained: list[Switch] = []
    for switch in grid.switches:
        if switch.retained or switch.id in extra_retained:
            retained.append(switch)
        elif not switch.open:
            uf.union(switch.node1, switch.node2)

    groups: dict[str, list[str]] = {}
    for node in grid.nodes:
        groups.setdefault(uf.find(node.id), []).append(node.id)

    buses: list[ReducedBus] = []
    node_to_bus: dict[str, int] = {}
    for root in sorted(groups):
        node_ids = sorted(groups[root])
        num = len(buses)
        buses.append(ReducedBus(
            id=node_ids[0],
            num=num,
            voltage_level_id=grid.node(node_ids[0]).voltage_level_id,
            node_ids=node_ids,
        ))
        for node_id in node_ids:
            node_to_bus[node_id] = num

    logger.debug(
        "Reduced %d nodes and %d switches to %d buses (%d retained switches)",
        len(grid.nodes), len(grid.switches), len(buses), len(retained),
    )
    return ReducedTopology(buses=buses, node_to_bus=node_to_bus, retained_switches=retained)
