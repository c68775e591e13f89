"""Per-unit calculation network.

A ``Network`` is an arena of buses, branches and injections built from one
synchronous component of a detailed grid. Elements reference each other by
numeric index; lookups by identifier go through the ``get_*``/``find_*``
methods, which also accept any original identifier merged into an element
(for instance every node of a reduced bus).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator

import networkx as nx
import numpy as np

from gridsens.network.elements import Branch, Bus, Generator, Hvdc, Load, Shunt, VoltageControlRole
from gridsens.network.voltage_control import MergeStatus, VoltageControl, VoltageControlType
from gridsens.parameters import LoadFlowParameters

if TYPE_CHECKING:
    from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)


@dataclass
class _Registry:
    """Element list plus identifier index."""
    items: list[Any] = field(default_factory=list)
    by_id: dict[str, int] = field(default_factory=dict)

    def add(self, element: Any) -> Any:
        element.num = len(self.items)
        self.items.append(element)
        self.by_id[element.id] = element.num
        for alias in element.original_ids:
            self.by_id.setdefault(alias, element.num)
        return element

    def find(self, key: str | int) -> Any | None:
        if isinstance(key, int):
            return self.items[key] if 0 <= key < len(self.items) else None
        num = self.by_id.get(key)
        return None if num is None else self.items[num]


class Network:
    """Calculation network of one synchronous component."""

    def __init__(
        self,
        id: str,
        parameters: LoadFlowParameters | None = None,
        num_cc: int = 0,
        num_sc: int = 0,
        grid: GridModel | None = None,
    ):
        self.id = id
        self.parameters = parameters or LoadFlowParameters()
        self.num_cc = num_cc
        self.num_sc = num_sc
        self.grid = grid
        self._buses = _Registry()
        self._branches = _Registry()
        self._generators = _Registry()
        self._loads = _Registry()
        self._shunts = _Registry()
        self._hvdcs = _Registry()
        self.voltage_controls: list[VoltageControl] = []
        # Set by the engines after a solve, read by update_state
        self.dc: bool = False
        self.properties: dict[str, Any] = {}

    def __repr__(self) -> str:
        return (
            f"Network(id={self.id!r}, cc={self.num_cc}, sc={self.num_sc}, "
            f"buses={len(self.buses)}, branches={len(self.branches)})"
        )

    @property
    def base_power(self) -> float:
        return self.parameters.base_power

    # ------------------------------------------------------------------
    # Element lists
    # ------------------------------------------------------------------

    @property
    def buses(self) -> list[Bus]:
        return self._buses.items

    @property
    def branches(self) -> list[Branch]:
        return self._branches.items

    @property
    def generators(self) -> list[Generator]:
        return self._generators.items

    @property
    def loads(self) -> list[Load]:
        return self._loads.items

    @property
    def shunts(self) -> list[Shunt]:
        return self._shunts.items

    @property
    def hvdcs(self) -> list[Hvdc]:
        return self._hvdcs.items

    def add_bus(self, bus: Bus) -> Bus:
        return self._buses.add(bus)

    def add_branch(self, branch: Branch) -> Branch:
        self._branches.add(branch)
        for bus_num in (branch.bus1_num, branch.bus2_num):
            if bus_num is not None:
                self.buses[bus_num].branch_nums.append(branch.num)
        return branch

    def add_generator(self, generator: Generator) -> Generator:
        self._generators.add(generator)
        self.buses[generator.bus_num].generator_nums.append(generator.num)
        return generator

    def add_load(self, load: Load) -> Load:
        self._loads.add(load)
        self.buses[load.bus_num].load_nums.append(load.num)
        return load

    def add_shunt(self, shunt: Shunt) -> Shunt:
        self._shunts.add(shunt)
        self.buses[shunt.bus_num].shunt_nums.append(shunt.num)
        return shunt

    def add_hvdc(self, hvdc: Hvdc) -> Hvdc:
        return self._hvdcs.add(hvdc)

    def add_voltage_control(self, control: VoltageControl) -> VoltageControl:
        control.num = len(self.voltage_controls)
        self.voltage_controls.append(control)
        return control

    # ------------------------------------------------------------------
    # Lookup by id or numeric index
    # ------------------------------------------------------------------

    def find_bus(self, key: str | int) -> Bus | None:
        return self._buses.find(key)

    def find_branch(self, key: str | int) -> Branch | None:
        return self._branches.find(key)

    def find_generator(self, key: str | int) -> Generator | None:
        return self._generators.find(key)

    def find_load(self, key: str | int) -> Load | None:
        return self._loads.find(key)

    def find_shunt(self, key: str | int) -> Shunt | None:
        return self._shunts.find(key)

    def find_hvdc(self, key: str | int) -> Hvdc | None:
        return self._hvdcs.find(key)

    def _get(self, registry: _Registry, kind: str, key: str | int) -> Any:
        element = registry.find(key)
        if element is None:
            raise KeyError(f"{kind} '{key}' not found in network '{self.id}'")
        return element

    def get_bus(self, key: str | int) -> Bus:
        return self._get(self._buses, "Bus", key)

    def get_branch(self, key: str | int) -> Branch:
        return self._get(self._branches, "Branch", key)

    def get_generator(self, key: str | int) -> Generator:
        return self._get(self._generators, "Generator", key)

    def get_load(self, key: str | int) -> Load:
        return self._get(self._loads, "Load", key)

    def get_shunt(self, key: str | int) -> Shunt:
        return self._get(self._shunts, "Shunt", key)

    def get_hvdc(self, key: str | int) -> Hvdc:
        return self._get(self._hvdcs, "HVDC line", key)

    def branches_by_original_id(self, element_id: str) -> list[Branch]:
        """Every branch built from ``element_id`` (three legs for a 3-winding transformer)."""
        return [b for b in self.branches if b.id == element_id or element_id in b.original_ids]

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def is_branch_connected(self, branch: Branch) -> bool:
        """Closed on both sides to enabled buses."""
        if branch.disabled or not (branch.connected1 and branch.connected2):
            return False
        if branch.bus1_num is None or branch.bus2_num is None:
            return False
        return not (self.buses[branch.bus1_num].disabled or self.buses[branch.bus2_num].disabled)

    def is_branch_partially_connected(self, branch: Branch) -> bool:
        """Exactly one side attached to an enabled bus."""
        if branch.disabled:
            return False
        sides = [
            connected and num is not None and not self.buses[num].disabled
            for num, connected in ((branch.bus1_num, branch.connected1), (branch.bus2_num, branch.connected2))
        ]
        return sides[0] != sides[1]

    @property
    def enabled_buses(self) -> list[Bus]:
        return [b for b in self.buses if not b.disabled]

    @property
    def slack_buses(self) -> list[Bus]:
        return [b for b in self.buses if b.slack and not b.disabled]

    @property
    def reference_bus(self) -> Bus | None:
        for bus in self.buses:
            if bus.reference and not bus.disabled:
                return bus
        return None

    def set_slack_buses(self, bus_nums: list[int]) -> None:
        """Assign slack buses, the first one being the angle reference."""
        for bus in self.buses:
            bus.slack = False
            bus.reference = False
        for bus_num in bus_nums:
            self.buses[bus_num].slack = True
        if bus_nums:
            self.buses[bus_nums[0]].reference = True

    def graph(self, include_zero_impedance: bool = True) -> nx.MultiGraph:
        """Graph of enabled buses and connected branches, edges keyed by branch num."""
        graph = nx.MultiGraph()
        graph.add_nodes_from(b.num for b in self.buses if not b.disabled)
        for branch in self.branches:
            if not self.is_branch_connected(branch):
                continue
            if not include_zero_impedance and branch.zero_impedance:
                continue
            graph.add_edge(branch.bus1_num, branch.bus2_num, key=branch.num)
        return graph

    def zero_impedance_groups(self) -> list[list[int]]:
        """Sets of enabled buses joined by connected zero-impedance branches (size > 1 only)."""
        graph = nx.Graph()
        for branch in self.branches:
            if branch.zero_impedance and self.is_branch_connected(branch):
                graph.add_edge(branch.bus1_num, branch.bus2_num)
        return [sorted(c) for c in nx.connected_components(graph)]

    def equation_bus_map(self) -> np.ndarray:
        """Representative bus num of each bus (-1 if disabled).

        Buses merged by zero-impedance branches share the representative
        with the smallest num.
        """
        rep = np.array([-1 if b.disabled else b.num for b in self.buses], dtype=int)
        for group in self.zero_impedance_groups():
            rep[group] = group[0]
        return rep

    # ------------------------------------------------------------------
    # Injections (per-unit), always summed from enabled constituents
    # ------------------------------------------------------------------

    def _enabled(self, registry: list, nums: list[int]) -> Iterator[Any]:
        for n in nums:
            element = registry[n]
            if not element.disabled:
                yield element

    def bus_generation_target_p(self, bus_num: int) -> float:
        return sum(g.target_p for g in self._enabled(self.generators, self.buses[bus_num].generator_nums))

    def bus_load_target_p(self, bus_num: int) -> float:
        return sum(ld.target_p for ld in self._enabled(self.loads, self.buses[bus_num].load_nums))

    def bus_load_target_q(self, bus_num: int) -> float:
        return sum(ld.target_q for ld in self._enabled(self.loads, self.buses[bus_num].load_nums))

    def bus_target_p(self, bus_num: int) -> float:
        """Net active injection target: generation - load + fixed injections."""
        bus = self.buses[bus_num]
        return self.bus_generation_target_p(bus_num) - self.bus_load_target_p(bus_num) + bus.fixed_p

    def bus_generation_target_q(self, bus_num: int) -> float:
        """Reactive target of generators not controlling voltage."""
        total = 0.0
        for gen in self._enabled(self.generators, self.buses[bus_num].generator_nums):
            if not self.generator_controls_voltage(gen):
                total += gen.target_q
        return total

    def bus_target_q(self, bus_num: int) -> float:
        bus = self.buses[bus_num]
        return self.bus_generation_target_q(bus_num) - self.bus_load_target_q(bus_num) + bus.fixed_q

    def bus_shunts(self, bus_num: int) -> list[Shunt]:
        return list(self._enabled(self.shunts, self.buses[bus_num].shunt_nums))

    def generator_controls_voltage(self, gen: Generator) -> bool:
        """True when the generator takes part in an active generator voltage control."""
        if gen.disabled or not gen.voltage_control or gen.q_limited:
            return False
        control = self.generator_voltage_control_of_bus(gen.bus_num)
        return control is not None and control.merge_status in (MergeStatus.MAIN, MergeStatus.DEPENDENT)

    def generator_voltage_control_of_bus(self, bus_num: int) -> VoltageControl | None:
        """Generator control for which ``bus_num`` is a controller."""
        for control in self.voltage_controls:
            if control.control_type == VoltageControlType.GENERATOR and bus_num in control.controller_nums:
                return control
        return None

    def voltage_control_role(self, bus_num: int) -> VoltageControlRole:
        for control in self.voltage_controls:
            if control.merge_status == MergeStatus.DISABLED:
                continue
            if control.controlled_bus_num == bus_num:
                return (
                    VoltageControlRole.CONTROLLED
                    if control.merge_status == MergeStatus.MAIN
                    else VoltageControlRole.FOLLOWER
                )
        for control in self.voltage_controls:
            if (
                control.control_type == VoltageControlType.GENERATOR
                and control.merge_status in (MergeStatus.MAIN, MergeStatus.DEPENDENT)
                and bus_num in control.operative_controller_nums
            ):
                return VoltageControlRole.CONTROLLER
        return VoltageControlRole.NONE

    # ------------------------------------------------------------------
    # Write-back
    # ------------------------------------------------------------------

    def update_state(self, write_slack_terminal: bool = False) -> None:
        """Write the current solution back to the detailed grid."""
        from gridsens.network.state_writer import write_network_state

        if self.grid is None:
            raise ValueError(f"Network '{self.id}' was not built from a grid model")
        write_network_state(self, self.grid, write_slack_terminal)
