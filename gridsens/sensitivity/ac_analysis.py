"""AC sensitivities.

Each state is solved by Newton-Raphson; its Jacobian at the solution gives
the linearized response of the unknowns to a variable::

    J · dx = C · du

``du`` being the variation of the values vector (group P and Q, control
targets) caused by one unit of the variable. A function sensitivity is the
gradient of the function times ``dx``.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from gridsens.contingency.connectivity import ConnectivityAnalysis
from gridsens.contingency.dc_states import topology_closed
from gridsens.contingency.results import StateStatus
from gridsens.core.errors import SingularMatrixError
from gridsens.equations.ac_system import AcEquationSystem
from gridsens.equations.system import EquationType, VariableType
from gridsens.equations.terms import current_derivative, current_magnitude
from gridsens.network.network_model import Network
from gridsens.network.slack import participation_vector
from gridsens.network.state import NetworkState
from gridsens.sensitivity.factors import SensitivityFunctionType, SensitivityVariableType
from gridsens.sensitivity.resolution import (
    ResolvedFactor,
    function_predefined,
    injection_weights,
    variable_predefined,
)
from gridsens.solver.ac_engine import AcLoadFlowEngine
from gridsens.solver.linear import LinearSolver, SparseLuSolver
from gridsens.solver.results import SolverStatus

logger = logging.getLogger(__name__)

_ACTIVE = (SensitivityFunctionType.BRANCH_ACTIVE_POWER_1, SensitivityFunctionType.BRANCH_ACTIVE_POWER_2)
_REACTIVE = (SensitivityFunctionType.BRANCH_REACTIVE_POWER_1, SensitivityFunctionType.BRANCH_REACTIVE_POWER_2)


class AcSensitivityAnalysis:
    def __init__(self, network: Network, linear_solver: LinearSolver | None = None):
        self.network = network
        self.linear_solver = linear_solver or SparseLuSolver()
        self._base_state: NetworkState | None = None
        self._connectivity: ConnectivityAnalysis | None = None
        self._system: AcEquationSystem | None = None
        self._removed: frozenset[int] = frozenset()
        self._main: set[int] = set()
        self._base_main: frozenset[int] = frozenset()
        self._base_closed: frozenset[int] = frozenset()

    def _solve(self, init_voltages: bool) -> StateStatus:
        engine = AcLoadFlowEngine(self.network, self.linear_solver)
        result = engine.run(init_voltages=init_voltages)
        if result.status != SolverStatus.CONVERGED:
            logger.warning("AC state of network '%s': %s", self.network.id, result.status.value)
            return StateStatus.FAILED
        self._system = engine.system
        return StateStatus.SUCCESS

    def solve_pre_contingency(self) -> StateStatus:
        status = self._solve(init_voltages=True)
        if status == StateStatus.SUCCESS:
            self._base_state = NetworkState.save(self.network)
            self._connectivity = ConnectivityAnalysis(self.network)
            self._base_main = frozenset(b.num for b in self.network.enabled_buses)
            self._main = set(self._base_main)
            self._base_closed = frozenset(b.num for b in self.network.branches if topology_closed(b))
        return status

    def restore(self) -> None:
        self._base_state.restore(self.network)
        self._system = None
        self._removed = frozenset()
        self._main = set(self._base_main)

    def solve_state(self, tripped_bus_nums: frozenset[int] = frozenset()) -> StateStatus:
        """Solve the current network state (contingency and actions already applied)."""
        network = self.network
        connectivity = self._connectivity.analyze(tripped_bus_nums)
        if not self._connectivity.apply(connectivity):
            return StateStatus.NO_IMPACT
        self._main = set(connectivity.main_bus_nums)
        self._removed = frozenset(
            n for n in self._base_closed if not topology_closed(network.branches[n])
        )
        return self._solve(init_voltages=False)

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def _participation(self, system: AcEquationSystem) -> np.ndarray:
        network = self.network
        params = network.parameters
        p = np.zeros(system.n_values)
        if not params.distributed_slack:
            return p
        by_bus = participation_vector(network, params.balance_type, params.countries_to_balance, self._main)
        for bus_num, factor in by_bus.items():
            g = system.group_of[bus_num]
            if g >= 0:
                p[system.p_offset + g] += factor
        return p

    def _rhs(self, system: AcEquationSystem, factor: ResolvedFactor, participation: np.ndarray) -> np.ndarray | None:
        """Right-hand side of one unit of the variable, None when it has no effect."""
        network = self.network
        var_type = factor.variable_type
        du = np.zeros(system.n_values)
        if var_type == SensitivityVariableType.INJECTION_ACTIVE_POWER:
            for bus_num, weight in injection_weights(network, factor).items():
                du[system.p_offset + system.group_of[bus_num]] += weight
            du -= participation
        elif var_type == SensitivityVariableType.INJECTION_REACTIVE_POWER:
            for bus_num, weight in injection_weights(network, factor).items():
                du[system.q_offset + system.group_of[bus_num]] += weight
        elif var_type == SensitivityVariableType.TRANSFORMER_PHASE:
            du = -system.a1_value_derivative(network.branches[factor.variable_num])
        elif var_type == SensitivityVariableType.HVDC_LINE_ACTIVE_POWER:
            hvdc = network.hvdcs[factor.variable_num]
            if hvdc.bus1_num is not None:
                du[system.p_offset + system.group_of[hvdc.bus1_num]] -= 1.0
            if hvdc.bus2_num is not None:
                du[system.p_offset + system.group_of[hvdc.bus2_num]] += 1.0
        else:
            row = system.find_row(EquationType.BUS_V, system.bus_group(factor.variable_num))
            if row is None:
                return None
            rhs = np.zeros(len(system.equations))
            rhs[row] = 1.0
            return rhs
        return system.combination @ du

    def _function(self, system: AcEquationSystem, factor: ResolvedFactor) -> tuple[float, np.ndarray, float]:
        """Reference value (p.u.), gradient, and direct derivative to the branch own a1."""
        network = self.network
        f_type = factor.function_type
        if f_type == SensitivityFunctionType.BUS_VOLTAGE:
            grad = np.zeros(len(system.variables))
            g = system.bus_group(factor.function_num)
            grad[system.column(VariableType.BUS_V, g)] = 1.0
            return network.buses[factor.function_num].v, grad, 0.0

        branch = network.branches[factor.function_num]
        (p1, q1, p2, q2), (dp1, dq1, dp2, dq2) = system.branch_flow_terms(branch)
        side = f_type.side
        p, q, dp, dq = (p1, q1, dp1, dq1) if side == 1 else (p2, q2, dp2, dq2)
        if f_type in _ACTIVE:
            value, deriv = p, dp
        elif f_type in _REACTIVE:
            value, deriv = q, dq
        else:
            v = network.buses[branch.bus1_num if side == 1 else branch.bus2_num].v
            value = float(current_magnitude(p, q, v))
            deriv = current_derivative(p, q, v, dp, dq, side)
        da1 = float(np.asarray(deriv.da1).ravel()[0])
        return value, system.gradient(branch, deriv), da1

    def values(self, factors: list[ResolvedFactor]) -> list[tuple[float, float]]:
        """(sensitivity, reference) of each factor in the solved state, physical units."""
        network = self.network
        system = self._system
        removed = self._removed
        participation = self._participation(system)
        results: list[tuple[float, float]] = []
        pending: list[tuple[int, ResolvedFactor, np.ndarray, float, int]] = []
        columns: dict[tuple, int] = {}
        rhs_columns: list[np.ndarray] = []
        for i, factor in enumerate(factors):
            forced = function_predefined(network, factor, removed)
            if forced is not None:
                results.append(forced)
                continue
            value, grad, da1 = self._function(system, factor)
            reference = value * factor.function_scale
            forced_value = variable_predefined(network, factor, removed)
            if forced_value is not None:
                results.append((forced_value, reference))
                continue
            key = (factor.variable_type, factor.variable_set, factor.factor.variable_id)
            if key not in columns:
                rhs = self._rhs(system, factor, participation)
                columns[key] = -1 if rhs is None else len(rhs_columns)
                if rhs is not None:
                    rhs_columns.append(rhs)
            if columns[key] < 0:
                results.append((0.0, reference))
                continue
            direct = da1 if (
                factor.variable_type == SensitivityVariableType.TRANSFORMER_PHASE
                and factor.variable_num == factor.function_num
                and factor.function_type.is_branch
            ) else 0.0
            results.append((math.nan, reference))
            pending.append((i, factor, grad, direct, columns[key]))

        if pending:
            try:
                factorization = self.linear_solver.factorize(system.jacobian())
                dx = factorization.solve(np.column_stack(rhs_columns))
            except SingularMatrixError as e:
                logger.warning("Singular Jacobian in network '%s': %s", network.id, e)
                return [(math.nan, ref) if math.isnan(v) else (v, ref) for v, ref in results]
            for i, factor, grad, direct, col in pending:
                raw = float(grad @ dx[:, col]) + direct
                results[i] = (factor.scale(raw), results[i][1])
        return results
