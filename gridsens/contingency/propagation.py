"""Resolve contingency element ids to calculation network elements."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from gridsens.contingency.model import Contingency, ContingencyElementType
from gridsens.core.errors import ElementNotFoundError
from gridsens.network.elements import BranchType
from gridsens.network.network_model import Network
from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)

_BRANCH_TYPES = {
    ContingencyElementType.BRANCH,
    ContingencyElementType.LINE,
    ContingencyElementType.TWO_WINDINGS_TRANSFORMER,
    ContingencyElementType.DANGLING_LINE,
}

_KIND = {
    ContingencyElementType.GENERATOR: "Generator",
    ContingencyElementType.LOAD: "Load",
    ContingencyElementType.SHUNT_COMPENSATOR: "Shunt compensator",
    ContingencyElementType.HVDC_LINE: "HVDC line",
    ContingencyElementType.BUS: "Bus",
    ContingencyElementType.SWITCH: "Switch",
    ContingencyElementType.THREE_WINDINGS_TRANSFORMER: "Three windings transformer",
}


@dataclass
class PropagatedContingency:
    """Elements of one network removed by a contingency."""
    contingency: Contingency
    branch_nums: set[int] = field(default_factory=set)
    generator_nums: set[int] = field(default_factory=set)
    load_nums: set[int] = field(default_factory=set)
    shunt_nums: set[int] = field(default_factory=set)
    hvdc_nums: set[int] = field(default_factory=set)
    bus_nums: set[int] = field(default_factory=set)

    @property
    def id(self) -> str:
        return self.contingency.id

    @property
    def has_no_impact(self) -> bool:
        return not (
            self.branch_nums or self.generator_nums or self.load_nums
            or self.shunt_nums or self.hvdc_nums or self.bus_nums
        )

    @classmethod
    def create(cls, network: Network, contingency: Contingency, grid: GridModel | None = None) -> PropagatedContingency:
        """Resolve ``contingency`` on ``network``.

        Elements living in another component of ``grid`` are skipped, as are
        elements already out of service.

        Raises:
            ElementNotFoundError: an id is unknown to the network and the grid.
        """
        propagated = cls(contingency)
        for element in contingency.elements:
            propagated._add(network, grid, element.id, element.type)
        if propagated.has_no_impact:
            logger.info("Contingency '%s' has no impact on network '%s'", contingency.id, network.id)
        return propagated

    def _missing(self, network: Network, grid: GridModel | None, kind: str, element_id: str) -> None:
        if grid is None or element_id not in grid:
            raise ElementNotFoundError(kind, element_id)
        logger.debug(
            "%s '%s' of contingency '%s' is not in network '%s', skipped",
            kind, element_id, self.id, network.id,
        )

    def _add_branch(self, network: Network, branch) -> None:
        if not branch.disabled and (
            network.is_branch_connected(branch) or network.is_branch_partially_connected(branch)
        ):
            self.branch_nums.add(branch.num)

    def _add(self, network: Network, grid: GridModel | None, element_id: str, element_type: ContingencyElementType) -> None:
        if element_type in _BRANCH_TYPES or element_type == ContingencyElementType.SWITCH:
            branch = network.find_branch(element_id)
            kind = "Switch" if element_type == ContingencyElementType.SWITCH else "Branch"
            if branch is None or (element_type == ContingencyElementType.SWITCH and branch.branch_type != BranchType.SWITCH):
                self._missing(network, grid, kind, element_id)
                return
            self._add_branch(network, branch)

        elif element_type == ContingencyElementType.THREE_WINDINGS_TRANSFORMER:
            legs = [
                b for b in network.branches_by_original_id(element_id)
                if b.branch_type in (BranchType.TRANSFORMER_LEG_1, BranchType.TRANSFORMER_LEG_2, BranchType.TRANSFORMER_LEG_3)
            ]
            if not legs:
                self._missing(network, grid, _KIND[element_type], element_id)
            for leg in legs:
                self._add_branch(network, leg)

        elif element_type == ContingencyElementType.BUS:
            bus = network.find_bus(element_id)
            if bus is None:
                self._missing(network, grid, "Bus", element_id)
                return
            self.bus_nums.add(bus.num)
            for n in bus.branch_nums:
                self._add_branch(network, network.branches[n])
            self.generator_nums.update(n for n in bus.generator_nums if not network.generators[n].disabled)
            self.load_nums.update(n for n in bus.load_nums if not network.loads[n].disabled)
            self.shunt_nums.update(n for n in bus.shunt_nums if not network.shunts[n].disabled)
            self.hvdc_nums.update(
                h.num for h in network.hvdcs
                if not h.disabled and bus.num in (h.bus1_num, h.bus2_num)
            )

        else:
            finder, target = {
                ContingencyElementType.GENERATOR: (network.find_generator, self.generator_nums),
                ContingencyElementType.LOAD: (network.find_load, self.load_nums),
                ContingencyElementType.SHUNT_COMPENSATOR: (network.find_shunt, self.shunt_nums),
                ContingencyElementType.HVDC_LINE: (network.find_hvdc, self.hvdc_nums),
            }[element_type]
            element = finder(element_id)
            if element is None:
                self._missing(network, grid, _KIND[element_type], element_id)
            elif not element.disabled:
                target.add(element.num)

    def apply(self, network: Network) -> None:
        """Take the elements out of service. Bus connectivity is left to the caller."""
        for n in self.branch_nums:
            network.branches[n].disabled = True
        for n in self.generator_nums:
            network.generators[n].disabled = True
        for n in self.load_nums:
            network.loads[n].disabled = True
        for n in self.shunt_nums:
            network.shunts[n].disabled = True
        for n in self.hvdc_nums:
            network.hvdcs[n].disabled = True
