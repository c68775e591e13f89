"""DC sensitivities.

For a state solved by ``DcStateSolver``, each distinct variable gives one
right-hand side; all of them are solved at once against the state's
factorization (compensated when the topology differs from the
pre-contingency one). A branch flow sensitivity is then read from the
angle increments::

    dP1/dvar = b · (dph1 - dph2)   (+ b for the phase shift of the branch itself)
"""

from __future__ import annotations

import logging
import math

import numpy as np

from gridsens.contingency.dc_states import DcState, DcStateSolver
from gridsens.contingency.results import StateStatus
from gridsens.core.errors import SingularMatrixError
from gridsens.network.flows import compute_branch_flows
from gridsens.network.network_model import Network
from gridsens.sensitivity.factors import SensitivityVariableType
from gridsens.sensitivity.resolution import (
    ResolvedFactor,
    function_predefined,
    injection_weights,
    variable_predefined,
)
from gridsens.solver.linear import LinearSolver

logger = logging.getLogger(__name__)


class DcSensitivityAnalysis:
    def __init__(self, network: Network, linear_solver: LinearSolver | None = None):
        self.network = network
        network.dc = True
        # Raises SingularMatrixError when the pre-contingency matrix is singular
        self.solver = DcStateSolver(network, linear_solver)
        self._state: DcState | None = None

    def restore(self) -> None:
        self.solver.restore()
        self._state = None

    def solve_state(self, tripped_bus_nums: frozenset[int] = frozenset()) -> StateStatus:
        """Solve the current network state (contingency and actions already applied)."""
        try:
            state = self.solver.prepare(tripped_bus_nums)
            if state is None:
                return StateStatus.NO_IMPACT
            state.solve_angles()
        except SingularMatrixError as e:
            logger.warning("DC state of network '%s' failed: %s", self.network.id, e)
            return StateStatus.FAILED
        self._state = state
        return StateStatus.SUCCESS

    def _variable_injections(self, factor: ResolvedFactor, participation: np.ndarray) -> np.ndarray:
        """Group injection increments for one unit of the variable."""
        network = self.network
        system = self._state.system
        u = np.zeros(system.n_groups)
        if factor.variable_type == SensitivityVariableType.INJECTION_ACTIVE_POWER:
            for bus_num, weight in injection_weights(network, factor).items():
                u[system.group_of[bus_num]] += weight
            u -= participation
        elif factor.variable_type == SensitivityVariableType.TRANSFORMER_PHASE:
            branch = network.branches[factor.variable_num]
            b = system.susceptance(branch)
            u[system.group_of[branch.bus1_num]] -= b
            u[system.group_of[branch.bus2_num]] += b
        else:
            hvdc = network.hvdcs[factor.variable_num]
            if hvdc.bus1_num is not None:
                u[system.group_of[hvdc.bus1_num]] -= 1.0
            if hvdc.bus2_num is not None:
                u[system.group_of[hvdc.bus2_num]] += 1.0
        return u

    def _participation(self) -> np.ndarray:
        system = self._state.system
        p = np.zeros(system.n_groups)
        for bus_num, factor in self._state.participation.items():
            g = system.group_of[bus_num]
            if g >= 0:
                p[g] += factor
        return p

    def values(self, factors: list[ResolvedFactor]) -> list[tuple[float, float]]:
        """(sensitivity, reference) of each factor in the solved state, physical units."""
        network = self.network
        state = self._state
        system = state.system
        removed = state.removed_branch_nums
        flows = compute_branch_flows(network, dc=True)

        results: list[tuple[float, float] | None] = []
        columns: dict[tuple, int] = {}
        pending: list[tuple[int, ResolvedFactor, int]] = []
        participation = self._participation()
        injections: list[np.ndarray] = []
        for i, factor in enumerate(factors):
            forced = function_predefined(network, factor, removed)
            if forced is not None:
                results.append(forced)
                continue
            flow = flows[factor.function_num]
            side = factor.function_type.side
            reference = (flow.p1 if side == 1 else flow.p2) * factor.function_scale
            forced_value = variable_predefined(network, factor, removed)
            if forced_value is not None:
                results.append((forced_value, reference))
                continue
            key = (factor.variable_type, factor.variable_set, factor.factor.variable_id)
            if key not in columns:
                columns[key] = len(injections)
                injections.append(self._variable_injections(factor, participation))
            results.append((math.nan, reference))
            pending.append((i, factor, columns[key]))

        if pending:
            rhs = system.combination @ np.column_stack(injections)
            dx = state.solve(rhs)
            dph = np.zeros((system.n_groups, dx.shape[1]))
            mask = system.phi_col >= 0
            dph[mask] = dx[system.phi_col[mask]]
            for i, factor, col in pending:
                branch = network.branches[factor.function_num]
                b = system.susceptance(branch)
                g1, g2 = system.group_of[branch.bus1_num], system.group_of[branch.bus2_num]
                raw = b * (dph[g1, col] - dph[g2, col])
                if (
                    factor.variable_type == SensitivityVariableType.TRANSFORMER_PHASE
                    and factor.variable_num == branch.num
                ):
                    raw += b
                if factor.function_type.side == 2:
                    raw = -raw
                results[i] = (factor.scale(float(raw)), results[i][1])
        return results
