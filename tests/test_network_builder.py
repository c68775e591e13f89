"""Tests for gridsens.network: per-unit network building, slack selection, post-processors."""

from __future__ import annotations

import pytest

from gridsens.core.errors import ParameterError
from gridsens.network.builder import build_networks
from gridsens.network.elements import BranchType, PhaseControlMode
from gridsens.network.slack import participation_vector
from gridsens.parameters import BalanceType, LoadFlowParameters, SlackBusSelectionMode
from gridsens.topology.model import Generator, Line, Load, Node


def _add_island(grid) -> None:
    """Two extra buses joined to each other but not to the rest of the grid."""
    grid.nodes += [Node("I1", "VL"), Node("I2", "VL")]
    grid.lines.append(Line("LI", "I1", "I2", r=0.0, x=160.0))
    grid.generators.append(Generator("GI", "I1", target_p=10.0, max_p=20.0, voltage_regulator_on=True, target_v=400.0))
    grid.loads.append(Load("LDI", "I2", p0=10.0))
    grid.reindex()


# ======================================================================
# Per-unit conversion
# ======================================================================


class TestPerUnitNetwork:
    """Tests for element conversion on the 100 MVA base."""

    def test_two_bus_values(self, two_bus_grid, params):
        (network,) = build_networks(two_bus_grid, params)
        line = network.get_branch("L12")
        assert line.pi_model.x == pytest.approx(0.1)
        assert line.pi_model.r1 == pytest.approx(1.0)
        assert network.get_generator("G1").target_p == pytest.approx(2.0)
        load = network.get_load("LD2")
        assert (load.target_p, load.target_q) == (pytest.approx(2.0), pytest.approx(1.0))
        assert network.get_generator("G1").target_v == pytest.approx(1.0)

    def test_phase_tap_changer_becomes_pi_array(self, loop_grid, params):
        (network,) = build_networks(loop_grid, params)
        pst = network.get_branch("PST13")
        assert pst.branch_type == BranchType.TRANSFORMER_2
        assert pst.pi_model.has_taps
        assert pst.pi_model.tap_position == 1
        assert pst.pi_model.a1 == pytest.approx(0.0)
        assert pst.phase_control_mode == PhaseControlMode.FIXED_TAP

    def test_merged_nodes_are_aliases(self, substation_grid, params):
        (network,) = build_networks(substation_grid, params)
        assert len(network.buses) == 2
        assert network.find_bus("N_LOAD") is network.find_bus("BBS1")

    def test_retained_switch_is_zero_impedance_branch(self, substation_factory, params):
        (network,) = build_networks(substation_factory(retained=True), params)
        coupler = network.get_branch("COUPLER")
        assert coupler.branch_type == BranchType.SWITCH
        assert coupler.zero_impedance
        assert network.is_branch_connected(coupler)

    def test_open_retained_switch_is_disconnected(self, substation_factory, params):
        (network,) = build_networks(substation_factory(breaker_open=True, retained=True), params)
        coupler = network.get_branch("COUPLER")
        assert not coupler.connected1 and not coupler.connected2


# ======================================================================
# Components and slack
# ======================================================================


class TestComponents:
    def test_one_network_per_synchronous_component(self, two_bus_grid, params):
        _add_island(two_bus_grid)
        networks = build_networks(two_bus_grid, params)
        assert [n.id for n in networks] == ["two_bus_0_0", "two_bus_1_1"]
        assert [len(n.buses) for n in networks] == [2, 2]

    def test_component_numbers_recorded(self, two_bus_grid, params):
        _add_island(two_bus_grid)
        island = build_networks(two_bus_grid, params)[1]
        assert all(b.properties["num_cc"] == 1 for b in island.buses)


class TestSlackSelection:
    def test_most_meshed(self, loop_grid, params):
        """B1 and B3 both have three branches; the smallest id wins."""
        (network,) = build_networks(loop_grid, params)
        assert network.reference_bus.id == "B1"

    def test_by_name(self, loop_grid):
        params = LoadFlowParameters(
            write_state=False, slack_bus_selection_mode=SlackBusSelectionMode.NAME, slack_bus_ids=("B4",)
        )
        (network,) = build_networks(loop_grid, params)
        assert [b.id for b in network.slack_buses] == ["B4"]

    def test_name_mode_requires_ids(self):
        with pytest.raises(ValueError):
            LoadFlowParameters(slack_bus_selection_mode=SlackBusSelectionMode.NAME)

    def test_several_slack_buses(self, loop_grid):
        params = LoadFlowParameters(write_state=False, max_slack_bus_count=2)
        (network,) = build_networks(loop_grid, params)
        assert [b.id for b in network.slack_buses] == ["B1", "B3"]
        assert network.reference_bus.id == "B1"


class TestParticipation:
    def test_proportional_to_max_p(self, bridge_grid, params):
        """G1 (1000 MW) and G3 (100 MW) share the imbalance 10:1."""
        (network,) = build_networks(bridge_grid, params)
        factors = participation_vector(network, BalanceType.PROPORTIONAL_TO_GENERATION_P_MAX)
        b1 = network.get_bus("B1").num
        b3 = network.get_bus("B3").num
        assert factors[b1] == pytest.approx(10.0 / 11.0)
        assert factors[b3] == pytest.approx(1.0 / 11.0)
        assert sum(factors.values()) == pytest.approx(1.0)

    def test_restricted_to_buses(self, bridge_grid, params):
        (network,) = build_networks(bridge_grid, params)
        b1 = network.get_bus("B1").num
        factors = participation_vector(network, BalanceType.PROPORTIONAL_TO_GENERATION_P_MAX, bus_nums={b1})
        assert factors == {b1: pytest.approx(1.0)}


class TestPostProcessors:
    def test_unknown_post_processor(self, two_bus_grid):
        with pytest.raises(ParameterError, match="Unknown network post-processor 'nope'"):
            build_networks(two_bus_grid, LoadFlowParameters(post_processors=("nope",)))

    def test_properties_copied_when_selected(self, two_bus_grid):
        two_bus_grid.lines[0].properties["owner"] = "tso"
        (network,) = build_networks(two_bus_grid, LoadFlowParameters(post_processors=("properties",)))
        assert network.get_branch("L12").properties == {"owner": "tso"}
