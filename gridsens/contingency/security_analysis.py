"""Security analysis: pre-contingency, post-contingency and operator strategy states.

Only the main synchronous component is analysed; contingency elements and
actions belonging to other components are skipped.

States of the network are strictly sequential. Before each state the
pre-contingency snapshot is restored, the contingency and actions are
applied, and the state is solved:

* AC: Newton-Raphson warm-started from the pre-contingency solution, with
  discrete controls frozen at the positions found by the pre-contingency
  outer loops.
* DC: compensation on the pre-contingency factorization when the equation
  structure allows it, new factorization otherwise (see ``dc_states``).

A ``threading.Event`` passed as ``cancel_event`` is checked between states.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Iterable

from gridsens.contingency.actions import apply_action, index_actions
from gridsens.contingency.connectivity import ConnectivityAnalysis
from gridsens.contingency.dc_states import DcStateSolver
from gridsens.contingency.limits import detect_violations
from gridsens.contingency.model import (
    Action,
    ActionType,
    Contingency,
    ContingencyElementType,
    OperatorStrategy,
    OperatorStrategyCondition,
)
from gridsens.contingency.propagation import PropagatedContingency
from gridsens.contingency.results import (
    OperatorStrategyResult,
    PostContingencyResult,
    SecurityAnalysisResult,
    StateResult,
    StateStatus,
)
from gridsens.core.errors import (
    AnalysisCancelledError,
    ElementNotFoundError,
    ParameterError,
    SingularMatrixError,
    StructuralError,
)
from gridsens.core.logging import log_context
from gridsens.network.builder import build_networks
from gridsens.network.network_model import Network
from gridsens.network.state import NetworkState
from gridsens.parameters import SecurityAnalysisParameters
from gridsens.solver.ac_engine import AcLoadFlowEngine
from gridsens.solver.linear import LinearSolver, SparseLuSolver
from gridsens.solver.results import SolverStatus, branch_results, bus_results
from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)


def retained_switch_ids(contingencies: Iterable[Contingency], actions: Iterable[Action] = ()) -> set[str]:
    """Switches that must stay branches of the calculation network."""
    ids = {
        e.id for c in contingencies for e in c.elements if e.type == ContingencyElementType.SWITCH
    }
    ids.update(a.element_id for a in actions if a.type == ActionType.SWITCH)
    return ids


def main_network(networks: list[Network]) -> Network:
    for network in networks:
        if network.num_cc == 0 and network.num_sc == 0:
            return network
    raise StructuralError("Grid has no main component to analyse")


def check_contingency_ids(
    contingencies: Iterable[Contingency],
    operator_strategies: Iterable[OperatorStrategy] = (),
) -> None:
    """Raises ParameterError on duplicates, ElementNotFoundError on unknown strategy contingencies."""
    ids: set[str] = set()
    for contingency in contingencies:
        if contingency.id in ids:
            raise ParameterError(f"Duplicated contingency id '{contingency.id}'")
        ids.add(contingency.id)
    for strategy in operator_strategies:
        if strategy.contingency_id not in ids:
            raise ElementNotFoundError("Contingency", strategy.contingency_id)


class SecurityAnalysis:
    def __init__(
        self,
        network: Network,
        parameters: SecurityAnalysisParameters,
        dc: bool = False,
        linear_solver: LinearSolver | None = None,
    ):
        self.network = network
        self.parameters = parameters
        self.dc = dc
        self.linear_solver = linear_solver or SparseLuSolver()
        self._dc_solver: DcStateSolver | None = None
        self._connectivity: ConnectivityAnalysis | None = None
        self._base_state: NetworkState | None = None
        self.pre_contingency: StateResult | None = None

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _collect(self, status: StateStatus, solver_status: SolverStatus) -> StateResult:
        network = self.network
        buses = bus_results(network)
        branches = branch_results(network, self.dc)
        return StateResult(
            status=status,
            solver_status=solver_status,
            buses=buses,
            branches=branches,
            violations=detect_violations(network, buses, branches, self.parameters, self.dc),
            disabled_bus_ids=[b.id for b in network.buses if b.disabled],
        )

    def _no_impact(self) -> StateResult:
        pre = self.pre_contingency
        return StateResult(
            StateStatus.NO_IMPACT, pre.solver_status, list(pre.buses), list(pre.branches), list(pre.violations),
        )

    def run_pre_contingency(self) -> StateResult:
        network = self.network
        if self.dc:
            network.dc = True
            try:
                self._dc_solver = DcStateSolver(network, self.linear_solver)
                self._dc_solver.prepare().solve_angles()
            except SingularMatrixError as e:
                logger.warning("Pre-contingency DC state of network '%s' failed: %s", network.id, e)
                self.pre_contingency = StateResult(StateStatus.FAILED, SolverStatus.SOLVER_FAILED)
                return self.pre_contingency
            self.pre_contingency = self._collect(StateStatus.SUCCESS, SolverStatus.CONVERGED)
        else:
            result = AcLoadFlowEngine(network, self.linear_solver).run()
            if result.status != SolverStatus.CONVERGED:
                self.pre_contingency = StateResult(StateStatus.FAILED, result.status)
                return self.pre_contingency
            self._base_state = NetworkState.save(network)
            self._connectivity = ConnectivityAnalysis(network)
            self.pre_contingency = self._collect(StateStatus.SUCCESS, result.status)

        params = self.parameters.load_flow
        if params.write_state and network.grid is not None:
            network.update_state(params.write_slack_terminal)
        return self.pre_contingency

    def run_state(self, propagated: PropagatedContingency, actions: Iterable[Action] = ()) -> StateResult:
        """Solve the contingency, followed by ``actions``, from the pre-contingency state."""
        if self.pre_contingency is None or self.pre_contingency.status == StateStatus.FAILED:
            return StateResult(StateStatus.FAILED)
        network = self.network
        self._restore()
        propagated.apply(network)
        applied = [apply_action(network, a) for a in actions]
        if propagated.has_no_impact and not any(applied):
            return self._no_impact()
        tripped = frozenset(propagated.bus_nums)
        try:
            if self.dc:
                state = self._dc_solver.prepare(tripped)
                if state is None:
                    return self._no_impact()
                state.solve_angles()
                status = SolverStatus.CONVERGED
            else:
                connectivity = self._connectivity.analyze(tripped)
                if not self._connectivity.apply(connectivity):
                    return self._no_impact()
                status = AcLoadFlowEngine(network, self.linear_solver).run(init_voltages=False).status
        except SingularMatrixError as e:
            logger.warning("State solve failed: %s", e)
            return StateResult(StateStatus.FAILED, SolverStatus.SOLVER_FAILED)
        if status != SolverStatus.CONVERGED:
            return StateResult(StateStatus.FAILED, status)
        return self._collect(StateStatus.SUCCESS, status)

    def _restore(self) -> None:
        if self.dc:
            self._dc_solver.restore()
        else:
            self._base_state.restore(self.network)

    def finish(self) -> None:
        """Put the network back in its pre-contingency state."""
        if self.pre_contingency is not None and self.pre_contingency.status != StateStatus.FAILED:
            self._restore()


def run_security_analysis(
    grid: GridModel,
    contingencies: Iterable[Contingency],
    parameters: SecurityAnalysisParameters | None = None,
    operator_strategies: Iterable[OperatorStrategy] = (),
    actions: Iterable[Action] = (),
    dc: bool = False,
    linear_solver: LinearSolver | None = None,
    cancel_event: threading.Event | None = None,
) -> SecurityAnalysisResult:
    """Run the security analysis of the main component of ``grid``.

    Raises:
        ElementNotFoundError: unknown contingency element, action or action element.
        ParameterError: duplicated ids or invalid action.
        StructuralError: malformed grid topology.
        AnalysisCancelledError: ``cancel_event`` was set.
    """
    parameters = parameters or SecurityAnalysisParameters()
    contingencies = list(contingencies)
    operator_strategies = list(operator_strategies)
    actions = list(actions)
    check_contingency_ids(contingencies, operator_strategies)
    action_by_id = index_actions(actions, operator_strategies, grid)

    networks = build_networks(
        grid, parameters.load_flow, retained_switch_ids=retained_switch_ids(contingencies, actions)
    )
    network = main_network(networks)
    propagated = [PropagatedContingency.create(network, c, grid) for c in contingencies]
    strategies_by_contingency: dict[str, list[OperatorStrategy]] = {}
    for strategy in operator_strategies:
        strategies_by_contingency.setdefault(strategy.contingency_id, []).append(strategy)

    start = time.perf_counter()
    analysis = SecurityAnalysis(network, parameters, dc, linear_solver)
    with log_context("pre-contingency"):
        pre = analysis.run_pre_contingency()
    result = SecurityAnalysisResult(network.id, pre)

    for contingency in propagated:
        if cancel_event is not None and cancel_event.is_set():
            analysis.finish()
            raise AnalysisCancelledError(f"Security analysis of network '{network.id}' cancelled")
        with log_context(contingency.id):
            state = analysis.run_state(contingency)
            logger.debug("Contingency '%s': %s", contingency.id, state.status.value)
            result.post_contingency.append(PostContingencyResult(contingency.id, state))

            for strategy in strategies_by_contingency.get(contingency.id, []):
                if strategy.condition == OperatorStrategyCondition.ANY_VIOLATION and not state.violations:
                    logger.debug("Operator strategy '%s' skipped, no violation", strategy.id)
                    continue
                strategy_state = analysis.run_state(
                    contingency, [action_by_id[a] for a in strategy.action_ids]
                )
                result.operator_strategies.append(
                    OperatorStrategyResult(strategy.id, contingency.id, strategy_state)
                )
    analysis.finish()

    duration_ms = round((time.perf_counter() - start) * 1000, 1)
    failed = sum(1 for r in result.post_contingency if r.status == StateStatus.FAILED)
    logger.info(
        "%s security analysis of network '%s': %d contingencies, %d failed, in %.1f ms",
        "DC" if dc else "AC", network.id, len(propagated), failed, duration_ms,
        extra={"network": network.id, "status": pre.status.value, "duration_ms": duration_ms},
    )
    return result
