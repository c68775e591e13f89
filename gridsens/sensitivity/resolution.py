"""Resolve factor identifiers to elements of the analysed network."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable

from gridsens.core.errors import ElementNotFoundError, ParameterError
from gridsens.network.network_model import Network
from gridsens.network.per_unit import current_pu_to_amps
from gridsens.sensitivity.factors import (
    DC_FUNCTION_TYPES,
    DC_VARIABLE_TYPES,
    SensitivityFactor,
    SensitivityFunctionType,
    SensitivityVariableSet,
    SensitivityVariableType,
)
from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)

_DEGREES_PER_RADIAN = 180.0 / math.pi


@dataclass
class ResolvedFactor:
    index: int
    factor: SensitivityFactor
    # Branch or bus num; None when the function lives in another component
    function_num: int | None
    # Bus num -> weight for injections, element num -> 1 otherwise; None when in another component
    variable_nums: dict[int, float] | None
    function_scale: float = 1.0
    variable_scale: float = 1.0

    @property
    def function_type(self) -> SensitivityFunctionType:
        return self.factor.function_type

    @property
    def variable_type(self) -> SensitivityVariableType:
        return self.factor.variable_type

    @property
    def variable_set(self) -> bool:
        return self.factor.variable_set

    @property
    def variable_num(self) -> int:
        """Element num of a single-element variable (phase, HVDC line, target voltage bus)."""
        return next(iter(self.variable_nums))

    @property
    def in_network(self) -> bool:
        return self.function_num is not None and bool(self.variable_nums)

    def scale(self, raw: float) -> float:
        """Per-unit sensitivity to physical units."""
        return raw * self.function_scale / self.variable_scale


class FactorResolver:
    """Looks ids up in the analysed network, then in the rest of the grid.

    An id found elsewhere only gives NaN results; an id found nowhere
    aborts the analysis.
    """

    def __init__(
        self,
        network: Network,
        others: Iterable[Network] = (),
        grid: GridModel | None = None,
        variable_sets: Iterable[SensitivityVariableSet] = (),
        dc: bool = False,
    ):
        self.network = network
        self.others = list(others)
        self.grid = grid
        self.variable_sets = {s.id: s for s in variable_sets}
        self.dc = dc

    def _elsewhere(self, kind: str, element_id: str, finders: tuple[str, ...]) -> None:
        """Raise unless ``element_id`` exists outside the analysed network."""
        if self.grid is not None and element_id in self.grid:
            return
        for other in self.others:
            if any(getattr(other, f)(element_id) is not None for f in finders):
                return
        raise ElementNotFoundError(kind, element_id)

    def _injection_bus(self, injection_id: str) -> int | None:
        network = self.network
        element = network.find_generator(injection_id) or network.find_load(injection_id)
        if element is not None:
            return element.bus_num
        self._elsewhere("Injection", injection_id, ("find_generator", "find_load"))
        return None

    def _injection(self, factor: SensitivityFactor) -> dict[int, float] | None:
        if factor.variable_set:
            variable_set = self.variable_sets.get(factor.variable_id)
            if variable_set is None:
                raise ElementNotFoundError("Variable set", factor.variable_id)
            weights = variable_set.normalized()
        else:
            weights = {factor.variable_id: 1.0}
        buses: dict[int, float] = {}
        for injection_id, weight in weights.items():
            bus_num = self._injection_bus(injection_id)
            if bus_num is not None:
                buses[bus_num] = buses.get(bus_num, 0.0) + weight
        if weights and not buses:
            return None
        return buses

    def _variable(self, factor: SensitivityFactor) -> tuple[dict[int, float] | None, float]:
        network = self.network
        s_base = network.base_power
        var_type = factor.variable_type
        if var_type in (SensitivityVariableType.INJECTION_ACTIVE_POWER, SensitivityVariableType.INJECTION_REACTIVE_POWER):
            return self._injection(factor), s_base

        if var_type == SensitivityVariableType.TRANSFORMER_PHASE:
            branch = network.find_branch(factor.variable_id)
            if branch is None:
                self._elsewhere("Branch", factor.variable_id, ("find_branch",))
                return None, _DEGREES_PER_RADIAN
            return {branch.num: 1.0}, _DEGREES_PER_RADIAN

        if var_type == SensitivityVariableType.HVDC_LINE_ACTIVE_POWER:
            hvdc = network.find_hvdc(factor.variable_id)
            if hvdc is None:
                self._elsewhere("HVDC line", factor.variable_id, ("find_hvdc",))
                return None, s_base
            return {hvdc.num: 1.0}, s_base

        bus = network.find_bus(factor.variable_id)
        if bus is None:
            # A voltage controlling generator stands for its controlled bus
            gen = network.find_generator(factor.variable_id)
            if gen is not None:
                bus = network.buses[gen.controlled_bus_num if gen.controlled_bus_num is not None else gen.bus_num]
        if bus is None:
            self._elsewhere("Bus", factor.variable_id, ("find_bus", "find_generator"))
            return None, 1.0
        return {bus.num: 1.0}, bus.nominal_v

    def _function(self, factor: SensitivityFactor) -> tuple[int | None, float]:
        network = self.network
        f_type = factor.function_type
        if not f_type.is_branch:
            bus = network.find_bus(factor.function_id)
            if bus is None:
                self._elsewhere("Bus", factor.function_id, ("find_bus",))
                return None, 1.0
            return bus.num, bus.nominal_v

        branch = network.find_branch(factor.function_id)
        if branch is None:
            self._elsewhere("Branch", factor.function_id, ("find_branch",))
            return None, 1.0
        if branch.zero_impedance:
            logger.warning("Branch '%s' has no impedance, its sensitivities are NaN", branch.id)
        if f_type in (SensitivityFunctionType.BRANCH_CURRENT_1, SensitivityFunctionType.BRANCH_CURRENT_2):
            bus_num = branch.bus1_num if f_type.side == 1 else branch.bus2_num
            if bus_num is None:
                return branch.num, 1.0
            return branch.num, current_pu_to_amps(1.0, network.buses[bus_num].nominal_v, network.base_power)
        return branch.num, network.base_power

    def resolve(self, factors: Iterable[SensitivityFactor]) -> list[ResolvedFactor]:
        """
        Raises:
            ParameterError: function or variable type not available in DC.
            ElementNotFoundError: unknown function, variable or variable set id.
        """
        resolved = []
        for index, factor in enumerate(factors):
            if self.dc and factor.function_type not in DC_FUNCTION_TYPES:
                raise ParameterError(f"Function type {factor.function_type.value} not supported in DC")
            if self.dc and factor.variable_type not in DC_VARIABLE_TYPES:
                raise ParameterError(f"Variable type {factor.variable_type.value} not supported in DC")
            function_num, function_scale = self._function(factor)
            variable_nums, variable_scale = self._variable(factor)
            resolved.append(ResolvedFactor(
                index, factor, function_num, variable_nums, function_scale, variable_scale,
            ))
        skipped = sum(1 for f in resolved if not f.in_network)
        if skipped:
            logger.warning(
                "%d factor(s) refer to elements outside network '%s', their values are NaN",
                skipped, self.network.id,
            )
        return resolved


# ----------------------------------------------------------------------
# Values forced by the state of the factor elements
# ----------------------------------------------------------------------

def function_predefined(
    network: Network, factor: ResolvedFactor, removed_branch_nums: frozenset[int]
) -> tuple[float, float] | None:
    """(sensitivity, reference) imposed by the function element, None when they must be computed."""
    nan = math.nan
    if factor.function_num is None:
        return nan, nan
    if not factor.function_type.is_branch:
        return (nan, nan) if network.buses[factor.function_num].disabled else None
    branch = network.branches[factor.function_num]
    if branch.zero_impedance:
        return nan, nan
    if branch.num in removed_branch_nums or network.is_branch_partially_connected(branch):
        # Opened branch: nothing flows whatever the variable
        return 0.0, 0.0
    if not network.is_branch_connected(branch):
        return nan, nan
    return None


def variable_predefined(
    network: Network, factor: ResolvedFactor, removed_branch_nums: frozenset[int]
) -> float | None:
    """Sensitivity imposed by a variable that cannot act in this state, None otherwise."""
    nan = math.nan
    if not factor.variable_nums:
        return nan
    var_type = factor.variable_type
    if var_type in (SensitivityVariableType.INJECTION_ACTIVE_POWER, SensitivityVariableType.INJECTION_REACTIVE_POWER):
        return None if injection_weights(network, factor) else nan

    num = factor.variable_num
    if var_type == SensitivityVariableType.TRANSFORMER_PHASE:
        branch = network.branches[num]
        if num in removed_branch_nums:
            return 0.0
        sides = [n for n in (branch.bus1_num, branch.bus2_num) if n is not None]
        if any(network.buses[n].disabled for n in sides):
            return nan
        return None if network.is_branch_connected(branch) else 0.0

    if var_type == SensitivityVariableType.HVDC_LINE_ACTIVE_POWER:
        hvdc = network.hvdcs[num]
        if hvdc.disabled:
            return 0.0
        sides = [n for n in (hvdc.bus1_num, hvdc.bus2_num) if n is not None]
        return nan if any(network.buses[n].disabled for n in sides) else None

    return nan if network.buses[num].disabled else None


def injection_weights(network: Network, factor: ResolvedFactor) -> dict[int, float]:
    """Injection weights restricted to enabled buses, renormalized."""
    weights = {n: w for n, w in factor.variable_nums.items() if not network.buses[n].disabled}
    total = sum(weights.values())
    if not weights or total == 0:
        return {}
    return {n: w / total for n, w in weights.items()}
