"""Connectivity of a network after element removals.

The pre-contingency graph is analysed once: a single opened branch that is
not a bridge cannot split the network, so most N-1 contingencies skip the
component search. Otherwise the live graph is partitioned; the component
holding the reference bus stays, every other bus is disabled.

Contingencies opening the same branches share one result, and results
leading to the same partition share their partition objects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import networkx as nx

from gridsens.network.network_model import Network
from gridsens.network.slack import select_slack_buses
from gridsens.network.voltage_control import update_voltage_controls
from gridsens.parameters import SlackBusLossBehavior

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Partition:
    main_bus_nums: frozenset[int]
    disabled_bus_nums: frozenset[int]
    slack_lost: bool = False


@dataclass(frozen=True)
class ConnectivityResult:
    partition: Partition
    # Opened branches which, put back, join every component to the main one
    elements_to_reconnect: tuple[int, ...] = ()

    @property
    def disabled_bus_nums(self) -> frozenset[int]:
        return self.partition.disabled_bus_nums

    @property
    def main_bus_nums(self) -> frozenset[int]:
        return self.partition.main_bus_nums

    @property
    def slack_lost(self) -> bool:
        return self.partition.slack_lost

    @property
    def connectivity_changed(self) -> bool:
        return bool(self.partition.disabled_bus_nums)


class ConnectivityAnalysis:
    def __init__(self, network: Network):
        self.network = network
        graph = network.graph()
        self._base_nodes = frozenset(graph.nodes)
        self._base_edges = {key: (u, v) for u, v, key in graph.edges(keys=True)}
        bridges = {frozenset(e) for e in nx.bridges(nx.Graph(graph))}
        self.bridges = frozenset(
            key for key, (u, v) in self._base_edges.items()
            if frozenset((u, v)) in bridges and graph.number_of_edges(u, v) == 1
        )
        self._unchanged = ConnectivityResult(Partition(self._base_nodes, frozenset()))
        self._results: dict[tuple[frozenset[int], frozenset[int]], ConnectivityResult] = {}
        self._partitions: dict[tuple[frozenset[int], bool], Partition] = {}

    @property
    def partition_count(self) -> int:
        return len(self._partitions)

    def _opened_branches(self, live: nx.MultiGraph) -> frozenset[int]:
        live_edges = {key for _, _, key in live.edges(keys=True)}
        return frozenset(k for k in self._base_edges if k not in live_edges)

    def analyze(self, tripped_bus_nums: frozenset[int] = frozenset()) -> ConnectivityResult:
        """Partition of the current network state (elements already taken out of service)."""
        live = self.network.graph()
        opened = self._opened_branches(live)
        tripped = frozenset(tripped_bus_nums)
        if not tripped and (not opened or (len(opened) == 1 and not opened & self.bridges)):
            return self._unchanged

        key = (opened, tripped)
        result = self._results.get(key)
        if result is None:
            result = self._compute(live, opened, tripped)
            self._results[key] = result
        return result

    def _compute(self, live: nx.MultiGraph, opened: frozenset[int], tripped: frozenset[int]) -> ConnectivityResult:
        network = self.network
        components = [frozenset(c) for c in nx.connected_components(live)]
        reference = network.reference_bus
        slack_lost = reference is None or reference.num in tripped
        main = None
        if not slack_lost:
            main = next(c for c in components if reference.num in c)
        else:
            candidates = [c for c in components if not c <= tripped]
            if candidates:
                main = max(candidates, key=lambda c: (len(c), -min(c)))
        if main is None:
            main = frozenset()
        disabled = frozenset(self._base_nodes - main)

        partition = self._partitions.setdefault((disabled, slack_lost), Partition(main, disabled, slack_lost))
        return ConnectivityResult(partition, self._elements_to_reconnect(components, opened))

    def _elements_to_reconnect(self, components: list[frozenset[int]], opened: frozenset[int]) -> tuple[int, ...]:
        component_of = {bus: i for i, c in enumerate(components) for bus in c}
        forest = nx.utils.UnionFind(range(len(components)))
        selected = []
        for key in sorted(opened):
            u, v = self._base_edges[key]
            cu, cv = component_of.get(u), component_of.get(v)
            if cu is None or cv is None or forest[cu] == forest[cv]:
                continue
            forest.union(cu, cv)
            selected.append(key)
        return tuple(selected)

    def apply(self, result: ConnectivityResult) -> bool:
        """Disable buses outside the main component and fix the slack buses.

        Returns False when the slack bus is lost and the parameters keep the
        original slack (NO_IMPACT behaviour); the network is left untouched.
        """
        network = self.network
        params = network.parameters
        if result.slack_lost and params.slack_bus_loss_behavior == SlackBusLossBehavior.NO_IMPACT:
            return False
        for n in result.disabled_bus_nums:
            network.buses[n].disabled = True

        if result.slack_lost:
            if result.main_bus_nums:
                select_slack_buses(network, params, result.main_bus_nums)
                logger.info(
                    "Reference bus lost, slack moved to '%s'",
                    network.reference_bus.id if network.reference_bus else None,
                )
        elif any(network.buses[n].slack for n in result.disabled_bus_nums):
            remaining = [b.num for b in network.buses if b.slack and not b.disabled]
            reference = network.reference_bus
            remaining.sort(key=lambda n: n != reference.num)
            network.set_slack_buses(remaining)
        update_voltage_controls(network)
        return True
