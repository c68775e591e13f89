"""Shared test fixtures for gridsens load flow, contingency and sensitivity tests.

All grids use one 400 kV level and a 100 MVA base, so that a reactance of
160 Ω is 0.1 p.u.
"""

from __future__ import annotations

import pytest

from gridsens.parameters import LoadFlowParameters
from gridsens.topology.model import DanglingLine, GridModel, HvdcLine, VscConverterStation

NOMINAL_V = 400.0
X_01_PU = 160.0  # Ω, 0.1 p.u. at 400 kV / 100 MVA


def _voltage_level(vl_id: str = "VL", nominal_v: float = NOMINAL_V) -> dict:
    return {
        "id": vl_id, "nominal_v": nominal_v,
        "low_voltage_limit": 0.95 * nominal_v, "high_voltage_limit": 1.05 * nominal_v,
    }


def _generator(gen_id: str, node: str, target_p: float, max_p: float = 1000.0, regulating: bool = True) -> dict:
    return {
        "id": gen_id, "node": node, "target_p": target_p, "max_p": max_p,
        "voltage_regulator_on": regulating, "target_v": NOMINAL_V,
    }


# ======================================================================
# Grids
# ======================================================================

def make_two_bus_grid(r: float = 0.0, x: float = X_01_PU) -> GridModel:
    """Generator of 200 MW at B1, load of 200 MW / 100 MVar at B2, one line."""
    return GridModel.from_dict({
        "id": "two_bus",
        "voltage_levels": [_voltage_level()],
        "nodes": [{"id": "B1", "voltage_level_id": "VL"}, {"id": "B2", "voltage_level_id": "VL"}],
        "lines": [{"id": "L12", "node1": "B1", "node2": "B2", "r": r, "x": x, "current_limit1": 1000.0}],
        "generators": [_generator("G1", "B1", 200.0)],
        "loads": [{"id": "LD2", "node": "B2", "p0": 200.0, "q0": 100.0}],
    })


def make_loop_grid() -> GridModel:
    """Four buses in a ring with a phase shifting transformer across B1-B3.

    Every branch has a reactance of 0.1 p.u. The generator sits at B1
    (slack), loads at B3 and B4; B2 is a pure transit bus.
    """
    return GridModel.from_dict({
        "id": "loop",
        "voltage_levels": [_voltage_level()],
        "nodes": [{"id": f"B{i}", "voltage_level_id": "VL"} for i in range(1, 5)],
        "lines": [
            {"id": "L12", "node1": "B1", "node2": "B2", "r": 0.0, "x": X_01_PU},
            {"id": "L23", "node1": "B2", "node2": "B3", "r": 0.0, "x": X_01_PU},
            {"id": "L34", "node1": "B3", "node2": "B4", "r": 0.0, "x": X_01_PU},
            {"id": "L41", "node1": "B4", "node2": "B1", "r": 0.0, "x": X_01_PU},
        ],
        "two_windings_transformers": [{
            "id": "PST13", "node1": "B1", "node2": "B3", "r": 0.0, "x": X_01_PU,
            "rated_u1": NOMINAL_V, "rated_u2": NOMINAL_V,
            "phase_tap_changer": {
                "low_tap": 0, "tap_position": 1,
                "steps": [{"alpha": -5.0}, {"alpha": 0.0}, {"alpha": 5.0}],
            },
        }],
        "generators": [_generator("G1", "B1", 300.0)],
        "loads": [
            {"id": "LD3", "node": "B3", "p0": 200.0, "q0": 20.0},
            {"id": "LD4", "node": "B4", "p0": 100.0, "q0": 10.0},
        ],
    })


def make_bridge_grid() -> GridModel:
    """B1 and B2 joined by two parallel lines, then a single line (a bridge) to B3.

    B2, the most meshed bus, is the slack. G3 and LD3 hang behind the bridge.
    """
    return GridModel.from_dict({
        "id": "bridge",
        "voltage_levels": [_voltage_level()],
        "nodes": [{"id": f"B{i}", "voltage_level_id": "VL"} for i in range(1, 4)],
        "lines": [
            {"id": "L12a", "node1": "B1", "node2": "B2", "r": 0.0, "x": X_01_PU},
            {"id": "L12b", "node1": "B1", "node2": "B2", "r": 0.0, "x": X_01_PU},
            {"id": "L23", "node1": "B2", "node2": "B3", "r": 0.0, "x": X_01_PU},
        ],
        "generators": [_generator("G1", "B1", 150.0), _generator("G3", "B3", 50.0, max_p=100.0, regulating=False)],
        "loads": [
            {"id": "LD2", "node": "B2", "p0": 100.0, "q0": 10.0},
            {"id": "LD3", "node": "B3", "p0": 100.0, "q0": 10.0},
        ],
    })


def make_substation_grid(breaker_open: bool = False, retained: bool = False) -> GridModel:
    """Node-breaker substation: two busbar sections coupled by a breaker.

    BBS1 carries the generator and a line to the remote bus R; BBS2 carries
    a load through a disconnector and a second line to R.
    """
    return GridModel.from_dict({
        "id": "substation",
        "voltage_levels": [_voltage_level("S1"), _voltage_level("S2")],
        "nodes": [
            {"id": "BBS1", "voltage_level_id": "S1"},
            {"id": "BBS2", "voltage_level_id": "S1"},
            {"id": "N_LOAD", "voltage_level_id": "S1"},
            {"id": "R", "voltage_level_id": "S2"},
        ],
        "switches": [
            {"id": "COUPLER", "voltage_level_id": "S1", "node1": "BBS1", "node2": "BBS2",
             "open": breaker_open, "retained": retained},
            {"id": "DISC_LOAD", "voltage_level_id": "S1", "node1": "BBS2", "node2": "N_LOAD",
             "kind": "disconnector"},
        ],
        "lines": [
            {"id": "LA", "node1": "BBS1", "node2": "R", "r": 0.0, "x": X_01_PU},
            {"id": "LB", "node1": "BBS2", "node2": "R", "r": 0.0, "x": X_01_PU},
        ],
        "generators": [_generator("G1", "BBS1", 100.0)],
        "loads": [
            {"id": "LD", "node": "N_LOAD", "p0": 60.0, "q0": 10.0},
            {"id": "LDR", "node": "R", "p0": 40.0, "q0": 5.0},
        ],
    })


def make_coupled_generators_grid(target_v2: float = NOMINAL_V) -> GridModel:
    """Busbars B1 and B1b joined by a retained breaker, feeding the load bus B2 over one line.

    G1 on B1 has twice the reactive range of G2 on B1b; both regulate
    their own busbar.
    """
    g1 = {**_generator("G1", "B1", 100.0), "min_q": -200.0, "max_q": 200.0}
    g2 = {**_generator("G2", "B1b", 100.0), "min_q": -100.0, "max_q": 100.0, "target_v": target_v2}
    return GridModel.from_dict({
        "id": "coupled",
        "voltage_levels": [_voltage_level()],
        "nodes": [{"id": n, "voltage_level_id": "VL"} for n in ("B1", "B1b", "B2")],
        "switches": [
            {"id": "COUPLER", "voltage_level_id": "VL", "node1": "B1", "node2": "B1b", "retained": True},
        ],
        "lines": [{"id": "L12", "node1": "B1", "node2": "B2", "r": 0.0, "x": X_01_PU}],
        "generators": [g1, g2],
        "loads": [{"id": "LD2", "node": "B2", "p0": 200.0, "q0": 50.0}],
    })


def make_transformer_grid() -> GridModel:
    """A 400/225 kV transformer T12 feeding 200 MW / 50 MVar at B2.

    The ratio tap changer spans 0.9 to 1.1 in 0.5 % steps and starts at 1.0;
    it is set up to hold B2 at 225 kV but does not regulate by default.
    Without control B2 sags to about 207 kV.
    """
    return GridModel.from_dict({
        "id": "transformer",
        "voltage_levels": [_voltage_level(), _voltage_level("VL225", 225.0)],
        "nodes": [{"id": "B1", "voltage_level_id": "VL"}, {"id": "B2", "voltage_level_id": "VL225"}],
        "two_windings_transformers": [{
            "id": "T12", "node1": "B1", "node2": "B2", "r": 0.0, "x": 50.0,
            "rated_u1": NOMINAL_V, "rated_u2": 225.0,
            "ratio_tap_changer": {
                "low_tap": 0, "tap_position": 20,
                "steps": [{"rho": 0.9 + 0.005 * i} for i in range(41)],
                "regulating": False, "target_v": 225.0, "regulating_node": "B2",
            },
        }],
        "generators": [_generator("G1", "B1", 200.0)],
        "loads": [{"id": "LD2", "node": "B2", "p0": 200.0, "q0": 50.0}],
    })


def make_three_windings_grid() -> GridModel:
    """A 400/225/20 kV three-winding transformer T3 supplying loads on its 225 kV and 20 kV sides."""
    def leg(node: str, rated_u: float) -> dict:
        return {"node": node, "r": 0.0, "x": X_01_PU, "rated_u": rated_u}

    return GridModel.from_dict({
        "id": "three_windings",
        "voltage_levels": [_voltage_level(), _voltage_level("VL225", 225.0), _voltage_level("VL20", 20.0)],
        "nodes": [
            {"id": "B1", "voltage_level_id": "VL"},
            {"id": "B2", "voltage_level_id": "VL225"},
            {"id": "B3", "voltage_level_id": "VL20"},
        ],
        "three_windings_transformers": [{
            "id": "T3", "rated_u0": NOMINAL_V,
            "leg1": leg("B1", NOMINAL_V), "leg2": leg("B2", 225.0), "leg3": leg("B3", 20.0),
        }],
        "generators": [_generator("G1", "B1", 150.0)],
        "loads": [
            {"id": "LD2", "node": "B2", "p0": 100.0, "q0": 10.0},
            {"id": "LD3", "node": "B3", "p0": 50.0, "q0": 5.0},
        ],
    })


def add_dangling_line(grid: GridModel, node: str = "B2", p0: float = 50.0) -> GridModel:
    """Attach dangling line DL exporting ``p0`` MW at ``node``."""
    grid.dangling_lines.append(DanglingLine("DL", node, r=0.0, x=X_01_PU, p0=p0, q0=0.0))
    grid.reindex()
    return grid


def add_hvdc_link(grid: GridModel, node1: str = "B1", node2: str = "B3", setpoint: float = 100.0) -> GridModel:
    """Attach HVDC line HVDC from station CS1 at ``node1`` to station CS2 at ``node2``, in setpoint mode."""
    grid.vsc_converter_stations += [VscConverterStation("CS1", node1), VscConverterStation("CS2", node2)]
    grid.hvdc_lines.append(HvdcLine("HVDC", "CS1", "CS2", active_setpoint=setpoint, max_p=2 * setpoint))
    grid.reindex()
    return grid


# ======================================================================
# Fixtures
# ======================================================================

@pytest.fixture
def two_bus_grid() -> GridModel:
    return make_two_bus_grid()


@pytest.fixture
def loop_grid() -> GridModel:
    return make_loop_grid()


@pytest.fixture
def bridge_grid() -> GridModel:
    return make_bridge_grid()


@pytest.fixture
def substation_grid() -> GridModel:
    return make_substation_grid()


@pytest.fixture
def substation_factory():
    """Builder of substation variants (open coupler, retained coupler)."""
    return make_substation_grid


@pytest.fixture
def params() -> LoadFlowParameters:
    """Default parameters without state write-back, so grids stay pristine between runs."""
    return LoadFlowParameters(write_state=False)
