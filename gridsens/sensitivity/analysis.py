"""Sensitivity analysis over pre-contingency, post-contingency and operator strategy states."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Iterable

from gridsens.contingency.actions import apply_action, index_actions
from gridsens.contingency.limits import current_violations
from gridsens.contingency.model import Action, Contingency, OperatorStrategy, OperatorStrategyCondition
from gridsens.contingency.propagation import PropagatedContingency
from gridsens.contingency.results import StateStatus
from gridsens.contingency.security_analysis import check_contingency_ids, main_network, retained_switch_ids
from gridsens.core.errors import AnalysisCancelledError, ElementNotFoundError, SingularMatrixError
from gridsens.core.logging import log_context
from gridsens.network.builder import build_networks
from gridsens.parameters import SensitivityAnalysisParameters
from gridsens.sensitivity.ac_analysis import AcSensitivityAnalysis
from gridsens.sensitivity.dc_analysis import DcSensitivityAnalysis
from gridsens.sensitivity.factors import SensitivityFactor, SensitivityVariableSet
from gridsens.sensitivity.resolution import FactorResolver, ResolvedFactor
from gridsens.sensitivity.results import (
    SensitivityAnalysisResult,
    SensitivityState,
    SensitivityStateResult,
    SensitivityValue,
)
from gridsens.solver.linear import LinearSolver
from gridsens.solver.results import branch_results
from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)

Values = list[tuple[float, float]]


def _check_factor_contingencies(factors: list[SensitivityFactor], contingency_ids: set[str]) -> None:
    for factor in factors:
        cid = factor.contingency_context.contingency_id
        if cid is not None and cid not in contingency_ids:
            raise ElementNotFoundError("Contingency", cid)


class _Run:
    """State sequencing of one sensitivity analysis."""

    def __init__(self, analysis, threshold: float, result: SensitivityAnalysisResult):
        self.analysis = analysis
        self.threshold = threshold
        self.result = result
        self.pre_values: Values | None = None

    def _threshold(self, value: float) -> float:
        if not math.isnan(value) and abs(value) < self.threshold:
            return 0.0
        return value

    def record(self, state: SensitivityState, status: StateStatus, factors: list[ResolvedFactor], values: Values | None) -> None:
        self.result.states.append(SensitivityStateResult(state, status))
        for k, factor in enumerate(factors):
            if values is None:
                value, reference = math.nan, math.nan
            else:
                value, reference = values[k]
            self.result.add(SensitivityValue(factor.index, state, self._threshold(value), reference))

    def compute(self, status: StateStatus, factors: list[ResolvedFactor]) -> Values | None:
        """Values of ``factors`` in the solved state; None when the state failed."""
        if status == StateStatus.FAILED:
            return None
        if status == StateStatus.NO_IMPACT:
            return [self.pre_values[f.index] for f in factors]
        in_network = [f for f in factors if f.in_network]
        computed = iter(self.analysis.values(in_network))
        return [next(computed) if f.in_network else (math.nan, math.nan) for f in factors]


def run_sensitivity_analysis(
    grid: GridModel,
    factors: Iterable[SensitivityFactor],
    contingencies: Iterable[Contingency] = (),
    variable_sets: Iterable[SensitivityVariableSet] = (),
    parameters: SensitivityAnalysisParameters | None = None,
    operator_strategies: Iterable[OperatorStrategy] = (),
    actions: Iterable[Action] = (),
    dc: bool = False,
    linear_solver: LinearSolver | None = None,
    cancel_event: threading.Event | None = None,
) -> SensitivityAnalysisResult:
    """Compute every factor in every state of its contingency context.

    Raises:
        ElementNotFoundError: unknown function, variable, variable set,
            contingency element or action id.
        ParameterError: duplicated ids, invalid action, or a factor type
            not available in DC.
        StructuralError: malformed grid topology.
        AnalysisCancelledError: ``cancel_event`` was set.
    """
    parameters = parameters or SensitivityAnalysisParameters()
    factors = list(factors)
    contingencies = list(contingencies)
    operator_strategies = list(operator_strategies)
    actions = list(actions)
    check_contingency_ids(contingencies, operator_strategies)
    _check_factor_contingencies(factors, {c.id for c in contingencies})
    action_by_id = index_actions(actions, operator_strategies, grid)

    networks = build_networks(
        grid, parameters.load_flow, retained_switch_ids=retained_switch_ids(contingencies, actions)
    )
    network = main_network(networks)
    others = [n for n in networks if n is not network]
    resolved = FactorResolver(network, others, grid, variable_sets, dc).resolve(factors)
    propagated = [PropagatedContingency.create(network, c, grid) for c in contingencies]
    strategies_by_contingency: dict[str, list[OperatorStrategy]] = {}
    for strategy in operator_strategies:
        strategies_by_contingency.setdefault(strategy.contingency_id, []).append(strategy)

    start = time.perf_counter()
    result = SensitivityAnalysisResult(factors)
    with log_context("pre-contingency"):
        if dc:
            try:
                analysis = DcSensitivityAnalysis(network, linear_solver)
                pre_status = analysis.solve_state()
            except SingularMatrixError as e:
                logger.warning("Pre-contingency DC state of network '%s' failed: %s", network.id, e)
                analysis, pre_status = None, StateStatus.FAILED
        else:
            analysis = AcSensitivityAnalysis(network, linear_solver)
            pre_status = analysis.solve_pre_contingency()
        run = _Run(analysis, parameters.threshold, result)
        run.pre_values = run.compute(pre_status, resolved)
        pre_factors = [f for f in resolved if f.factor.contingency_context.includes_pre_contingency()]
        run.record(
            SensitivityState.pre_contingency(), pre_status, pre_factors,
            None if run.pre_values is None else [run.pre_values[f.index] for f in pre_factors],
        )

    failed = 0
    for contingency in propagated:
        if cancel_event is not None and cancel_event.is_set():
            if pre_status != StateStatus.FAILED:
                analysis.restore()
            raise AnalysisCancelledError(f"Sensitivity analysis of network '{network.id}' cancelled")
        state_factors = [f for f in resolved if f.factor.contingency_context.includes(contingency.id)]
        strategies = strategies_by_contingency.get(contingency.id, [])
        if not state_factors and not strategies:
            continue
        with log_context(contingency.id):
            status = StateStatus.FAILED
            violated = False
            if pre_status != StateStatus.FAILED:
                analysis.restore()
                status = _solve(analysis, network, contingency, [])
                if status == StateStatus.SUCCESS:
                    violated = bool(current_violations(network, branch_results(network, dc)))
            failed += status == StateStatus.FAILED
            run.record(
                SensitivityState.post_contingency(contingency.id), status, state_factors,
                run.compute(status, state_factors),
            )

            for strategy in strategies:
                if strategy.condition == OperatorStrategyCondition.ANY_VIOLATION and not violated:
                    logger.debug("Operator strategy '%s' skipped, no violation", strategy.id)
                    continue
                status = StateStatus.FAILED
                if pre_status != StateStatus.FAILED:
                    analysis.restore()
                    status = _solve(analysis, network, contingency, [action_by_id[a] for a in strategy.action_ids])
                run.record(
                    SensitivityState.post_operator_strategy(contingency.id, strategy.id), status, state_factors,
                    run.compute(status, state_factors),
                )
    if pre_status != StateStatus.FAILED:
        analysis.restore()

    duration_ms = round((time.perf_counter() - start) * 1000, 1)
    logger.info(
        "%s sensitivity analysis of network '%s': %d factors, %d contingencies, %d failed, in %.1f ms",
        "DC" if dc else "AC", network.id, len(factors), len(propagated), failed, duration_ms,
        extra={"network": network.id, "status": pre_status.value, "duration_ms": duration_ms},
    )
    return result


def _solve(analysis, network, contingency: PropagatedContingency, actions: list[Action]) -> StateStatus:
    """Apply the contingency then ``actions`` on the restored network and solve."""
    contingency.apply(network)
    applied = [apply_action(network, a) for a in actions]
    if contingency.has_no_impact and not any(applied):
        return StateStatus.NO_IMPACT
    return analysis.solve_state(frozenset(contingency.bus_nums))
