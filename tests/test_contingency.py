"""Tests for gridsens.contingency: connectivity, propagation and security analysis."""

from __future__ import annotations

import math
import threading

import pytest

from gridsens.contingency import (
    Action,
    ActionType,
    Contingency,
    ContingencyContext,
    ContingencyElement,
    ContingencyElementType,
    OperatorStrategy,
    OperatorStrategyCondition,
    StateStatus,
    run_security_analysis,
)
from gridsens.contingency.connectivity import ConnectivityAnalysis
from gridsens.contingency.limits import LimitType
from gridsens.contingency.propagation import PropagatedContingency
from gridsens.core.errors import AnalysisCancelledError, ElementNotFoundError, ParameterError
from gridsens.network.builder import build_networks
from gridsens.parameters import LoadFlowParameters, SecurityAnalysisParameters, SlackBusLossBehavior
from gridsens.topology.model import Generator

from conftest import add_dangling_line, add_hvdc_link, make_three_windings_grid

SA_PARAMS = SecurityAnalysisParameters(load_flow=LoadFlowParameters(write_state=False))


def _strategy(strategy_id: str, contingency_id: str, *action_ids: str, condition=OperatorStrategyCondition.TRUE):
    return OperatorStrategy(
        id=strategy_id,
        contingency_context=ContingencyContext.specific(contingency_id),
        action_ids=action_ids,
        condition=condition,
    )


# ======================================================================
# Request models
# ======================================================================


class TestRequestModels:
    def test_contingency_needs_elements(self):
        with pytest.raises(ValueError):
            Contingency(id="C", elements=())

    def test_specific_context_requires_id(self):
        with pytest.raises(ValueError):
            ContingencyContext(context_type="specific")

    def test_context_inclusion(self):
        assert ContingencyContext.all().includes_pre_contingency()
        assert not ContingencyContext.only_contingencies().includes_pre_contingency()
        assert ContingencyContext.specific("C1").includes("C1")
        assert not ContingencyContext.specific("C1").includes("C2")
        assert not ContingencyContext.none().includes("C1")

    def test_strategy_needs_specific_context(self):
        with pytest.raises(ValueError, match="must target one specific contingency"):
            OperatorStrategy(id="S", contingency_context=ContingencyContext.all(), action_ids=("A",))

    def test_tap_action_needs_position(self):
        with pytest.raises(ValueError, match="needs a tap position"):
            Action(id="A", type=ActionType.PHASE_TAP_CHANGER_POSITION, element_id="PST13")


# ======================================================================
# Connectivity
# ======================================================================


class TestConnectivityAnalysis:
    """Tests for bridge detection and partitioning of the bridge grid."""

    def test_only_single_line_is_bridge(self, bridge_grid, params):
        (network,) = build_networks(bridge_grid, params)
        analysis = ConnectivityAnalysis(network)
        assert analysis.bridges == {network.get_branch("L23").num}

    def test_parallel_line_loss_keeps_connectivity(self, bridge_grid, params):
        (network,) = build_networks(bridge_grid, params)
        analysis = ConnectivityAnalysis(network)
        network.get_branch("L12a").disabled = True
        result = analysis.analyze()
        assert not result.connectivity_changed
        assert analysis.partition_count == 0

    def test_bridge_loss_isolates_bus(self, bridge_grid, params):
        (network,) = build_networks(bridge_grid, params)
        analysis = ConnectivityAnalysis(network)
        l23 = network.get_branch("L23")
        l23.disabled = True
        result = analysis.analyze()
        assert result.disabled_bus_nums == {network.get_bus("B3").num}
        assert result.elements_to_reconnect == (l23.num,)
        assert not result.slack_lost

    def test_same_opening_shares_result(self, bridge_grid, params):
        (network,) = build_networks(bridge_grid, params)
        analysis = ConnectivityAnalysis(network)
        network.get_branch("L23").disabled = True
        assert analysis.analyze() is analysis.analyze()


class TestPropagation:
    def test_unknown_element(self, bridge_grid, params):
        (network,) = build_networks(bridge_grid, params)
        with pytest.raises(ElementNotFoundError, match="Branch 'NOPE' not found"):
            PropagatedContingency.create(network, Contingency.branch("NOPE"), bridge_grid)

    def test_bus_contingency_takes_attached_elements(self, bridge_grid, params):
        (network,) = build_networks(bridge_grid, params)
        contingency = Contingency(
            id="B3_OUT", elements=(ContingencyElement(id="B3", type=ContingencyElementType.BUS),)
        )
        propagated = PropagatedContingency.create(network, contingency, bridge_grid)
        assert propagated.bus_nums == {network.get_bus("B3").num}
        assert propagated.branch_nums == {network.get_branch("L23").num}
        assert propagated.generator_nums == {network.get_generator("G3").num}
        assert propagated.load_nums == {network.get_load("LD3").num}

    def test_disconnected_element_has_no_impact(self, loop_grid, params):
        loop_grid.loads[1].connected = False
        (network,) = build_networks(loop_grid, params)
        contingency = Contingency(
            id="LD4_OUT", elements=(ContingencyElement(id="LD4", type=ContingencyElementType.LOAD),)
        )
        assert PropagatedContingency.create(network, contingency, loop_grid).has_no_impact


# ======================================================================
# Security analysis
# ======================================================================


class TestSecurityAnalysis:
    """End-to-end security analysis on small grids."""

    @pytest.mark.parametrize("dc", [False, True])
    def test_parallel_line_loss(self, bridge_grid, dc):
        """Losing one of two parallel lines doubles the flow on the other."""
        result = run_security_analysis(bridge_grid, [Contingency.branch("L12a")], SA_PARAMS, dc=dc)
        assert result.pre_contingency.status == StateStatus.SUCCESS
        pre = result.pre_contingency.branch("L12b").p1
        post = result.contingency("L12a").state
        assert post.status == StateStatus.SUCCESS
        assert post.branch("L12b").p1 == pytest.approx(2 * pre, rel=1e-3)

    def test_dc_bridge_loss_disables_island(self, bridge_grid):
        """B3 is cut off; G1 alone balances the remaining load LD2."""
        result = run_security_analysis(bridge_grid, [Contingency.branch("L23")], SA_PARAMS, dc=True)
        assert result.pre_contingency.branch("L12a").p1 == pytest.approx(75.0)
        state = result.contingency("L23").state
        assert state.disabled_bus_ids == ["B3"]
        assert math.isnan(state.bus("B3").angle)
        assert state.branch("L12a").p1 == pytest.approx(50.0)

    def test_ac_isolated_load(self, two_bus_grid):
        result = run_security_analysis(two_bus_grid, [Contingency.branch("L12")], SA_PARAMS)
        state = result.contingency("L12").state
        assert state.status == StateStatus.SUCCESS
        assert state.disabled_bus_ids == ["B2"]
        assert math.isnan(state.bus("B2").v)

    def test_already_disconnected_element(self, loop_grid):
        """A contingency on an element already out of service reports the pre-contingency state."""
        loop_grid.loads[1].connected = False
        contingency = Contingency(
            id="LD4_OUT", elements=(ContingencyElement(id="LD4", type=ContingencyElementType.LOAD),)
        )
        result = run_security_analysis(loop_grid, [contingency], SA_PARAMS, dc=True)
        state = result.contingency("LD4_OUT").state
        assert state.status == StateStatus.NO_IMPACT
        assert state.branches == result.pre_contingency.branches

    def test_current_violations_with_reduction(self, two_bus_grid):
        params = SecurityAnalysisParameters(
            load_flow=LoadFlowParameters(write_state=False), limit_reduction=0.1
        )
        result = run_security_analysis(two_bus_grid, [], params)
        violations = [v for v in result.pre_contingency.violations if v.limit_type == LimitType.CURRENT]
        assert [(v.subject_id, v.side) for v in violations] == [("L12", 1)]
        assert violations[0].value > 100.0

    def test_voltage_violation(self, two_bus_grid):
        """200 MW + 100 MVar over 0.1 p.u. pulls the load bus below its 380 kV limit."""
        result = run_security_analysis(two_bus_grid, [], SA_PARAMS)
        kinds = {(v.subject_id, v.limit_type) for v in result.pre_contingency.violations}
        assert ("B2", LimitType.LOW_VOLTAGE) in kinds

    def test_write_state_restores_pre_contingency(self, bridge_grid):
        params = SecurityAnalysisParameters(load_flow=LoadFlowParameters(write_state=True))
        run_security_analysis(bridge_grid, [Contingency.branch("L23")], params, dc=True)
        assert bridge_grid.get("L12a").p1 == pytest.approx(75.0)


class TestOperatorStrategies:
    @pytest.mark.parametrize("dc", [False, True])
    def test_reconnection_gives_identical_state(self, bridge_grid, dc):
        """Closing the tripped line again reproduces the pre-contingency flows exactly."""
        reclose = Action(id="RECLOSE", type=ActionType.TERMINALS_CONNECTION, element_id="L12a", open=False)
        result = run_security_analysis(
            bridge_grid, [Contingency.branch("L12a")], SA_PARAMS,
            operator_strategies=[_strategy("S1", "L12a", "RECLOSE")], actions=[reclose], dc=dc,
        )
        strategy = result.operator_strategy("S1")
        assert strategy.status == StateStatus.SUCCESS
        pre = {b.id: b.p1 for b in result.pre_contingency.branches}
        assert {b.id: b.p1 for b in strategy.state.branches} == pre

    def test_any_violation_strategy_skipped_without_violation(self, bridge_grid):
        reclose = Action(id="RECLOSE", type=ActionType.TERMINALS_CONNECTION, element_id="L12a", open=False)
        result = run_security_analysis(
            bridge_grid, [Contingency.branch("L12a")], SA_PARAMS,
            operator_strategies=[
                _strategy("S1", "L12a", "RECLOSE", condition=OperatorStrategyCondition.ANY_VIOLATION)
            ],
            actions=[reclose], dc=True,
        )
        assert result.operator_strategies == []

    def test_tap_action_changes_loop_flows(self, loop_grid):
        """Moving the phase shifter to +5° after losing L34 pushes more power through PST13."""
        tap = Action(id="TAP", type=ActionType.PHASE_TAP_CHANGER_POSITION, element_id="PST13", tap_position=2)
        result = run_security_analysis(
            loop_grid, [Contingency.branch("L34")], SA_PARAMS,
            operator_strategies=[_strategy("S1", "L34", "TAP")], actions=[tap], dc=True,
        )
        post = result.contingency("L34").state.branch("PST13").p1
        assert result.operator_strategy("S1").state.branch("PST13").p1 > post

    def test_tap_out_of_range(self, loop_grid):
        tap = Action(id="TAP", type=ActionType.PHASE_TAP_CHANGER_POSITION, element_id="PST13", tap_position=7)
        with pytest.raises(ParameterError, match="out of range"):
            run_security_analysis(
                loop_grid, [Contingency.branch("L34")], SA_PARAMS,
                operator_strategies=[_strategy("S1", "L34", "TAP")], actions=[tap], dc=True,
            )


class TestSlackBusLoss:
    """Tripping the reference bus B1 of the loop, with a second generator at B3."""

    @staticmethod
    def _run(loop_grid, behavior: SlackBusLossBehavior, dc: bool):
        loop_grid.generators.append(
            Generator("G3", "B3", target_p=0.0, max_p=1000.0, target_v=400.0, voltage_regulator_on=True)
        )
        loop_grid.reindex()
        contingency = Contingency(id="B1_OUT", elements=(ContingencyElement(id="B1", type=ContingencyElementType.BUS),))
        params = SecurityAnalysisParameters(
            load_flow=LoadFlowParameters(write_state=False, slack_bus_loss_behavior=behavior)
        )
        return run_security_analysis(loop_grid, [contingency], params, dc=dc)

    @pytest.mark.parametrize("dc", [False, True])
    def test_relocate_moves_slack(self, loop_grid, dc):
        """G3 takes over both loads; B2 becomes a dead end."""
        result = self._run(loop_grid, SlackBusLossBehavior.RELOCATE, dc)
        state = result.contingency("B1_OUT").state
        assert state.status == StateStatus.SUCCESS
        assert state.disabled_bus_ids == ["B1"]
        assert state.branch("L34").p1 == pytest.approx(100.0, abs=1e-3)
        assert state.branch("L23").p1 == pytest.approx(0.0, abs=1e-3)

    @pytest.mark.parametrize("dc", [False, True])
    def test_no_impact_keeps_pre_contingency(self, loop_grid, dc):
        result = self._run(loop_grid, SlackBusLossBehavior.NO_IMPACT, dc)
        state = result.contingency("B1_OUT").state
        assert state.status == StateStatus.NO_IMPACT
        assert state.branches == result.pre_contingency.branches


class TestEquipmentOutages:
    """Outages of three-winding transformers, dangling lines and HVDC lines."""

    @pytest.mark.parametrize("dc", [False, True])
    def test_three_windings_transformer(self, dc):
        contingency = Contingency(
            id="T3_OUT", elements=(ContingencyElement(id="T3", type=ContingencyElementType.THREE_WINDINGS_TRANSFORMER),)
        )
        result = run_security_analysis(make_three_windings_grid(), [contingency], SA_PARAMS, dc=dc)
        state = result.contingency("T3_OUT").state
        assert state.status == StateStatus.SUCCESS
        assert {"B2", "B3"} <= set(state.disabled_bus_ids)
        assert "B1" not in state.disabled_bus_ids
        assert math.isnan(state.branch("T3_leg_1").p1)

    @pytest.mark.parametrize("dc", [False, True])
    def test_dangling_line(self, loop_grid, dc):
        contingency = Contingency(
            id="DL_OUT", elements=(ContingencyElement(id="DL", type=ContingencyElementType.DANGLING_LINE),)
        )
        result = run_security_analysis(add_dangling_line(loop_grid), [contingency], SA_PARAMS, dc=dc)
        pre = result.pre_contingency
        assert pre.branch("L12").p1 - pre.branch("L23").p1 == pytest.approx(50.0, abs=1e-3)
        state = result.contingency("DL_OUT").state
        assert state.status == StateStatus.SUCCESS
        assert state.branch("L12").p1 == pytest.approx(state.branch("L23").p1, abs=1e-3)

    @pytest.mark.parametrize("dc", [False, True])
    def test_hvdc_line(self, loop_grid, dc):
        """Without the link, all 300 MW leave B1 over the AC network."""
        contingency = Contingency(
            id="HVDC_OUT", elements=(ContingencyElement(id="HVDC", type=ContingencyElementType.HVDC_LINE),)
        )
        result = run_security_analysis(add_hvdc_link(loop_grid), [contingency], SA_PARAMS, dc=dc)
        state = result.contingency("HVDC_OUT").state
        assert state.status == StateStatus.SUCCESS
        flows = {b.id: b.p1 for b in state.branches}
        assert flows["L12"] + flows["PST13"] - flows["L41"] == pytest.approx(300.0, abs=1e-3)


class TestRequestErrors:
    def test_duplicated_contingency(self, two_bus_grid):
        with pytest.raises(ParameterError, match="Duplicated contingency id 'L12'"):
            run_security_analysis(two_bus_grid, [Contingency.branch("L12")] * 2, SA_PARAMS)

    def test_strategy_on_unknown_contingency(self, two_bus_grid):
        close = Action(id="A", type=ActionType.TERMINALS_CONNECTION, element_id="L12", open=False)
        with pytest.raises(ElementNotFoundError, match="Contingency 'C9' not found"):
            run_security_analysis(
                two_bus_grid, [Contingency.branch("L12")], SA_PARAMS,
                operator_strategies=[_strategy("S", "C9", "A")], actions=[close],
            )

    def test_unknown_action(self, two_bus_grid):
        with pytest.raises(ElementNotFoundError, match="Action 'A9' not found"):
            run_security_analysis(
                two_bus_grid, [Contingency.branch("L12")], SA_PARAMS,
                operator_strategies=[_strategy("S", "L12", "A9")],
            )

    def test_unknown_action_element(self, two_bus_grid):
        action = Action(id="A", type=ActionType.SWITCH, element_id="SW9", open=True)
        with pytest.raises(ElementNotFoundError, match="Switch 'SW9' not found"):
            run_security_analysis(two_bus_grid, [], SA_PARAMS, actions=[action])

    def test_cancellation(self, bridge_grid):
        event = threading.Event()
        event.set()
        with pytest.raises(AnalysisCancelledError):
            run_security_analysis(bridge_grid, [Contingency.branch("L23")], SA_PARAMS, dc=True, cancel_event=event)
