"""Tests for gridsens.topology: grid model and node/switch reduction."""

from __future__ import annotations

import pytest

from gridsens.core.errors import StructuralError
from gridsens.topology.model import GridModel, PhaseTapChanger, Switch
from gridsens.topology.reducer import reduce_topology


# ======================================================================
# Grid model
# ======================================================================


class TestGridModel:
    """Tests for the detailed grid container."""

    def test_from_dict_builds_nested_tap_changer(self, loop_grid):
        """Nested tap changer dicts become dataclasses with their steps."""
        pst = loop_grid.get("PST13")
        assert isinstance(pst.phase_tap_changer, PhaseTapChanger)
        assert [s.alpha for s in pst.phase_tap_changer.steps] == [-5.0, 0.0, 5.0]

    def test_lookup_by_id(self, two_bus_grid):
        assert "L12" in two_bus_grid
        assert two_bus_grid.find("missing") is None
        with pytest.raises(KeyError, match="missing"):
            two_bus_grid.get("missing")

    def test_duplicate_id_rejected(self):
        with pytest.raises(StructuralError, match="Duplicate identifier 'X'"):
            GridModel.from_dict({
                "voltage_levels": [{"id": "X", "nominal_v": 20.0}],
                "nodes": [{"id": "X", "voltage_level_id": "X"}],
            })

    def test_unknown_collection_rejected(self):
        """A misspelt collection name must not silently drop its elements."""
        with pytest.raises(StructuralError, match="shunt_compensators"):
            GridModel.from_dict({
                "voltage_levels": [{"id": "VL", "nominal_v": 400.0}],
                "shunt_compensators": [{"id": "SH", "node": "N"}],
            })


# ======================================================================
# Reduction
# ======================================================================


class TestReduceTopology:
    """Tests for merging nodes across closed switches."""

    def test_closed_switches_merge_nodes(self, substation_grid):
        """Both busbar sections and the load node collapse into one bus."""
        topology = reduce_topology(substation_grid)
        assert [b.id for b in topology.buses] == ["BBS1", "R"]
        assert topology.bus_of("N_LOAD").id == "BBS1"
        assert topology.bus_of("BBS2").node_ids == ["BBS1", "BBS2", "N_LOAD"]
        assert topology.retained_switches == []

    def test_open_breaker_splits_bus(self, substation_factory):
        topology = reduce_topology(substation_factory(breaker_open=True))
        assert [b.id for b in topology.buses] == ["BBS1", "BBS2", "R"]
        assert topology.bus_of("N_LOAD").id == "BBS2"

    def test_retained_switch_kept(self, substation_factory):
        """A retained switch does not merge its nodes and is returned as a branch candidate."""
        topology = reduce_topology(substation_factory(retained=True))
        assert len(topology.buses) == 3
        assert [s.id for s in topology.retained_switches] == ["COUPLER"]

    def test_retained_by_request(self, substation_grid):
        """Switches named by a contingency are retained even if the grid does not flag them."""
        topology = reduce_topology(substation_grid, retained_switch_ids={"COUPLER"})
        assert [s.id for s in topology.retained_switches] == ["COUPLER"]
        assert topology.bus_of("BBS1").num != topology.bus_of("BBS2").num

    def test_result_independent_of_switch_order(self, substation_grid):
        reversed_grid = GridModel.from_dict({"id": "substation"})
        reversed_grid.voltage_levels = substation_grid.voltage_levels
        reversed_grid.nodes = list(reversed(substation_grid.nodes))
        reversed_grid.switches = list(reversed(substation_grid.switches))
        reversed_grid.reindex()
        assert [b.id for b in reduce_topology(reversed_grid).buses] == ["BBS1", "R"]

    def test_unknown_retained_switch(self, substation_grid):
        with pytest.raises(StructuralError, match="Switch 'NOPE' not found"):
            reduce_topology(substation_grid, retained_switch_ids={"NOPE"})


class TestValidation:
    """Malformed topologies are structural errors raised before any solve."""

    def test_dangling_node_reference(self, two_bus_grid):
        two_bus_grid.loads[0].node = "B9"
        with pytest.raises(StructuralError, match="Element 'LD2' references unknown node 'B9'"):
            reduce_topology(two_bus_grid)

    def test_switch_across_voltage_levels(self, substation_grid):
        substation_grid.switches.append(Switch("BAD", "S1", "BBS1", "R"))
        substation_grid.reindex()
        with pytest.raises(StructuralError, match="connects voltage levels"):
            reduce_topology(substation_grid)

    def test_unknown_voltage_level(self, two_bus_grid):
        two_bus_grid.nodes[0].voltage_level_id = "NOWHERE"
        with pytest.raises(StructuralError, match="unknown voltage level 'NOWHERE'"):
            reduce_topology(two_bus_grid)
