"""Tests for gridsens.solver: AC Newton-Raphson and DC load flows."""

from __future__ import annotations

import math

import pytest

from gridsens.network.builder import build_networks
from gridsens.network.voltage_control import MergeStatus, VoltageControlType
from gridsens.parameters import LoadFlowParameters
from gridsens.solver import AcLoadFlowEngine, SolverStatus, run_load_flow
from gridsens.topology.model import Generator, Line, PhaseRegulationMode, ShuntCompensator, TapStep

from conftest import (
    NOMINAL_V,
    X_01_PU,
    add_dangling_line,
    add_hvdc_link,
    make_coupled_generators_grid,
    make_three_windings_grid,
    make_transformer_grid,
    make_two_bus_grid,
)


def _with_open_lines(grid):
    """Add one line open at side 2 and one line open at both sides."""
    grid.lines.append(Line("L_HALF", "B1", "B2", r=0.0, x=X_01_PU, connected2=False))
    grid.lines.append(Line("L_OPEN", "B1", "B2", r=0.0, x=X_01_PU, connected1=False, connected2=False))
    grid.reindex()
    return grid


# ======================================================================
# AC
# ======================================================================


class TestAcLoadFlow:
    """Tests for the Newton-Raphson AC load flow."""

    def test_two_bus_converges_fast(self, two_bus_grid, params):
        """Generator 2 p.u., load 2 + j1 p.u., x = 0.1 p.u.: at most 10 iterations."""
        result = run_load_flow(two_bus_grid, params)
        main = result.main
        assert main.status == SolverStatus.CONVERGED
        assert main.iterations <= 10
        assert main.slack_bus_ids == ["B1"]

    def test_two_bus_lossless_transfer(self, two_bus_grid, params):
        """Without resistance the slack injects exactly the load."""
        result = run_load_flow(two_bus_grid, params)
        line = result.branch("L12")
        assert line.p1 == pytest.approx(200.0, abs=1e-3)
        assert line.p2 == pytest.approx(-200.0, abs=1e-3)
        # Reactive losses of the series reactance
        assert line.q1 > 100.0

    def test_regulated_voltage_and_drop(self, two_bus_grid, params):
        result = run_load_flow(two_bus_grid, params)
        assert result.bus("B1").v == pytest.approx(400.0, abs=1e-3)
        assert result.bus("B2").v < 400.0
        assert result.bus("B2").angle < 0.0

    def test_slack_absorbs_load_plus_losses(self, params):
        """With resistance, the generation covers the load plus the line losses."""
        grid = make_two_bus_grid(r=16.0)
        result = run_load_flow(grid, params)
        line = result.branch("L12")
        losses = line.p1 + line.p2
        assert losses > 0.0
        assert -line.p2 == pytest.approx(200.0, abs=1e-3)
        assert result.main.slack_bus_active_power_mismatch == pytest.approx(0.0, abs=params.slack_bus_p_max_mismatch)

    def test_warm_start_reuses_solution(self, two_bus_grid, params):
        """A second run from the solved state converges immediately."""
        (network,) = build_networks(two_bus_grid, params)
        engine = AcLoadFlowEngine(network)
        assert engine.run().status == SolverStatus.CONVERGED
        again = engine.run(init_voltages=False)
        assert again.status == SolverStatus.CONVERGED
        assert again.iterations <= 1

    def test_no_voltage_control(self, two_bus_grid, params):
        two_bus_grid.generators[0].voltage_regulator_on = False
        result = run_load_flow(two_bus_grid, params)
        assert result.main.status == SolverStatus.NO_CALCULATION
        assert not result.ok


class TestDisconnectedBranches:
    """Flows of branches open at one or both sides."""

    @pytest.mark.parametrize("dc", [False, True])
    def test_both_sides_open_is_nan(self, two_bus_grid, params, dc):
        result = run_load_flow(_with_open_lines(two_bus_grid), params, dc=dc)
        line = result.branch("L_OPEN")
        assert math.isnan(line.p1) and math.isnan(line.p2)

    @pytest.mark.parametrize("dc", [False, True])
    def test_one_side_open_is_zero(self, two_bus_grid, params, dc):
        result = run_load_flow(_with_open_lines(two_bus_grid), params, dc=dc)
        line = result.branch("L_HALF")
        assert line.p1 == 0.0
        assert line.p2 == 0.0

    def test_open_lines_do_not_change_transfer(self, two_bus_grid, params):
        result = run_load_flow(_with_open_lines(two_bus_grid), params, dc=True)
        assert result.branch("L12").p1 == pytest.approx(200.0)


# ======================================================================
# DC
# ======================================================================


class TestDcLoadFlow:
    def test_two_bus_angles(self, two_bus_grid, params):
        """P = θ / x: 2 p.u. over 0.1 p.u. gives a 0.2 rad angle difference."""
        result = run_load_flow(two_bus_grid, params, dc=True)
        assert result.main.status == SolverStatus.CONVERGED
        assert result.bus("B2").angle == pytest.approx(math.degrees(-0.2))
        assert result.branch("L12").p1 == pytest.approx(200.0)

    def test_loop_flows_split_by_reactance(self, loop_grid, params):
        """B3 draws 125 MW through PST13 and 62.5 MW through B2; B4 passes the rest on."""
        result = run_load_flow(loop_grid, params, dc=True)
        flows = {b: result.branch(b).p1 for b in ("L12", "L23", "L34", "L41", "PST13")}
        # Kirchhoff at B1: generation leaves through L12, PST13 and against L41
        assert flows["L12"] + flows["PST13"] - flows["L41"] == pytest.approx(300.0)
        # B2 is a transit bus
        assert flows["L12"] == pytest.approx(flows["L23"])
        # B4 consumes 100 MW
        assert flows["L34"] - flows["L41"] == pytest.approx(100.0)

    def test_distributed_slack_balances(self, loop_grid, params):
        """A generation deficit is taken by the participating generator."""
        loop_grid.generators[0].target_p = 250.0
        result = run_load_flow(loop_grid, params, dc=True)
        assert result.main.distributed_active_power == pytest.approx(50.0)
        assert result.main.slack_bus_active_power_mismatch == pytest.approx(0.0, abs=1e-6)


class TestStateWriteBack:
    def test_ac_close_to_dc_for_small_transfer(self):
        """With a small lossless transfer, AC angles match the DC approximation."""
        grid = make_two_bus_grid()
        grid.generators[0].target_p = 10.0
        grid.loads[0].p0 = 10.0
        grid.loads[0].q0 = 0.0
        run_load_flow(grid, LoadFlowParameters(write_state=True))
        ac_angle = grid.node("B2").angle
        ac_v = grid.node("B2").v
        run_load_flow(grid, LoadFlowParameters(write_state=True), dc=True)
        dc_angle = grid.node("B2").angle
        assert ac_angle == pytest.approx(dc_angle, abs=1e-3)
        assert ac_v == pytest.approx(400.0, rel=1e-3)

    def test_flows_written_to_grid(self, two_bus_grid):
        run_load_flow(two_bus_grid, LoadFlowParameters(write_state=True))
        line = two_bus_grid.get("L12")
        assert line.p1 == pytest.approx(200.0, abs=1e-3)
        # Generators use the load sign convention
        assert two_bus_grid.get("G1").p == pytest.approx(-200.0, abs=1e-3)
        assert line.i1 > 0.0


# ======================================================================
# Controls
# ======================================================================


def _regulating_pst(grid, target_mw: float):
    """Give PST13 1° steps from -5° to +5° and let it hold ``target_mw`` on side 1."""
    ptc = grid.get("PST13").phase_tap_changer
    ptc.steps = [TapStep(alpha=float(a)) for a in range(-5, 6)]
    ptc.tap_position = 5
    ptc.regulating = True
    ptc.regulation_mode = PhaseRegulationMode.ACTIVE_POWER_CONTROL
    ptc.regulation_value = target_mw
    return grid


def _regulating_shunt(grid):
    grid.shunts.append(ShuntCompensator(
        "SH", "B2", b_per_section=2e-4, section_count=0, maximum_section_count=20,
        voltage_regulator_on=True, target_v=225.0,
    ))
    grid.reindex()
    return grid


class TestVoltageControlMerge:
    """Controls meeting on buses joined by a zero-impedance switch."""

    def test_merge_statuses(self):
        """Equal targets: the smaller bus id leads, the shunt control is hidden behind generators."""
        grid = make_coupled_generators_grid()
        grid.shunts.append(ShuntCompensator(
            "SH", "B1b", b_per_section=1e-4, section_count=0, maximum_section_count=5,
            voltage_regulator_on=True, target_v=NOMINAL_V,
        ))
        grid.reindex()
        (network,) = build_networks(grid, LoadFlowParameters(write_state=False, shunt_compensator_voltage_control_on=True))
        statuses = {
            (c.control_type, network.buses[c.controlled_bus_num].id): c.merge_status
            for c in network.voltage_controls
        }
        assert statuses == {
            (VoltageControlType.GENERATOR, "B1"): MergeStatus.MAIN,
            (VoltageControlType.GENERATOR, "B1b"): MergeStatus.DEPENDENT,
            (VoltageControlType.SHUNT, "B1b"): MergeStatus.HIDDEN,
        }

    def test_highest_target_leads(self):
        grid = make_coupled_generators_grid(target_v2=410.0)
        result = run_load_flow(grid, LoadFlowParameters(write_state=False))
        assert result.main.status == SolverStatus.CONVERGED
        assert result.bus("B1").v == pytest.approx(410.0, abs=1e-3)
        assert result.bus("B1b").v == pytest.approx(410.0, abs=1e-3)

    def test_merged_controllers_share_reactive_power(self):
        """Both generators produce, split by reactive range (2:1), and together feed the line."""
        grid = make_coupled_generators_grid()
        result = run_load_flow(grid, LoadFlowParameters(write_state=True))
        assert result.main.status == SolverStatus.CONVERGED
        q1, q2 = grid.get("G1").q, grid.get("G2").q
        assert q1 < 0.0 and q2 < 0.0
        assert q1 == pytest.approx(2.0 * q2, rel=1e-6)
        assert q1 + q2 == pytest.approx(-grid.get("L12").q1, abs=1e-3)


class TestOuterLoops:
    """Outer loops switching generators to PQ and rounding continuous controls."""

    @staticmethod
    def _add_limited_generator(grid):
        """G3 at B3 aims at 410 kV with only ±20 MVar available."""
        grid.generators.append(Generator(
            "G3", "B3", target_p=0.0, max_p=100.0, target_v=410.0, voltage_regulator_on=True,
            min_q=-20.0, max_q=20.0,
        ))
        grid.reindex()
        return grid

    def test_reactive_limit_blocks_generator(self, loop_grid):
        grid = self._add_limited_generator(loop_grid)
        result = run_load_flow(grid, LoadFlowParameters(write_state=True))
        assert result.main.status == SolverStatus.CONVERGED
        assert grid.get("G3").q == pytest.approx(-20.0, abs=1e-3)
        assert result.bus("B3").v < 409.0

    def test_without_reactive_limits_target_held(self, loop_grid):
        grid = self._add_limited_generator(loop_grid)
        result = run_load_flow(grid, LoadFlowParameters(write_state=True, use_reactive_limits=False))
        assert result.bus("B3").v == pytest.approx(410.0, abs=1e-3)
        assert grid.get("G3").q < -20.0

    def test_phase_shifter_holds_active_power(self, loop_grid):
        """125 MW at tap 0°; a 150 MW target needs about +3°, rounded to a real tap."""
        grid = _regulating_pst(loop_grid, 150.0)
        result = run_load_flow(grid, LoadFlowParameters(write_state=True, phase_shifter_regulation_on=True))
        assert result.main.status == SolverStatus.CONVERGED
        # Within half a 1° step (about 4.4 MW) of the target
        assert result.branch("PST13").p1 == pytest.approx(150.0, abs=5.0)
        assert grid.get("PST13").phase_tap_changer.tap_position > 5

    def test_phase_shifter_ignored_when_disabled(self, loop_grid):
        grid = _regulating_pst(loop_grid, 150.0)
        result = run_load_flow(grid, LoadFlowParameters(write_state=True))
        assert result.branch("PST13").p1 == pytest.approx(125.0, abs=5.0)
        assert grid.get("PST13").phase_tap_changer.tap_position == 5

    def test_ratio_tap_changer_holds_voltage(self, params):
        free = run_load_flow(make_transformer_grid(), params).bus("B2").v
        grid = make_transformer_grid()
        grid.get("T12").ratio_tap_changer.regulating = True
        result = run_load_flow(grid, LoadFlowParameters(write_state=True, transformer_voltage_control_on=True))
        assert result.main.status == SolverStatus.CONVERGED
        assert free < 215.0
        assert result.bus("B2").v == pytest.approx(225.0, abs=2.5)
        assert grid.get("T12").ratio_tap_changer.tap_position != 20

    def test_shunt_holds_voltage(self):
        grid = _regulating_shunt(make_transformer_grid())
        result = run_load_flow(grid, LoadFlowParameters(write_state=True, shunt_compensator_voltage_control_on=True))
        assert result.main.status == SolverStatus.CONVERGED
        assert result.bus("B2").v == pytest.approx(225.0, abs=2.5)
        shunt = grid.get("SH")
        assert 0 < shunt.section_count <= 20
        # A capacitor produces reactive power: negative in load sign convention
        assert shunt.q < 0.0


# ======================================================================
# Other equipment
# ======================================================================


class TestOtherEquipment:
    """Three-winding transformers, dangling lines and HVDC links in a load flow."""

    @pytest.mark.parametrize("dc", [False, True])
    def test_three_windings_transformer_legs(self, dc):
        grid = make_three_windings_grid()
        result = run_load_flow(grid, LoadFlowParameters(write_state=True), dc=dc)
        assert result.main.status == SolverStatus.CONVERGED
        assert result.branch("T3_leg_1").p1 == pytest.approx(150.0, abs=1e-3)
        assert result.branch("T3_leg_2").p1 == pytest.approx(-100.0, abs=1e-3)
        assert result.branch("T3_leg_3").p1 == pytest.approx(-50.0, abs=1e-3)
        t3 = grid.get("T3")
        assert [leg.p for leg in t3.legs] == pytest.approx([150.0, -100.0, -50.0], abs=1e-3)

    @pytest.mark.parametrize("dc", [False, True])
    def test_dangling_line_exports_p0(self, loop_grid, params, dc):
        """The boundary draws 50 MW at the transit bus B2."""
        result = run_load_flow(add_dangling_line(loop_grid), params, dc=dc)
        assert result.main.status == SolverStatus.CONVERGED
        assert result.branch("DL").p1 == pytest.approx(50.0, abs=1e-3)
        assert result.branch("L12").p1 - result.branch("L23").p1 == pytest.approx(50.0, abs=1e-3)

    @pytest.mark.parametrize("dc", [False, True])
    def test_hvdc_setpoint_relieves_ac_path(self, loop_grid, params, dc):
        """100 MW reach B3 over the HVDC link, so the AC network carries 100 MW less out of B1."""
        result = run_load_flow(add_hvdc_link(loop_grid), params, dc=dc)
        assert result.main.status == SolverStatus.CONVERGED
        flows = {b: result.branch(b).p1 for b in ("L12", "L23", "L34", "L41", "PST13")}
        assert flows["L12"] + flows["PST13"] - flows["L41"] == pytest.approx(200.0, abs=1e-3)
        assert flows["L23"] + flows["PST13"] - flows["L34"] == pytest.approx(100.0, abs=1e-3)

    def test_hvdc_converter_powers_written(self, loop_grid):
        grid = add_hvdc_link(loop_grid)
        run_load_flow(grid, LoadFlowParameters(write_state=True), dc=True)
        assert grid.get("CS1").p == pytest.approx(100.0)
        assert grid.get("CS2").p == pytest.approx(-100.0)
