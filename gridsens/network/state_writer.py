"""Write a solved network back to its detailed grid.

Sign convention on the grid side is the load convention: power flowing
from the bus into the element is positive, so a producing generator gets a
negative ``p``. Voltages are written in kV and degrees, currents in A.
Elements of disabled buses get NaN.
"""

from __future__ import annotations

import logging
import math

from gridsens.network.elements import BranchType
from gridsens.network.flows import BranchFlow, compute_branch_flows, generator_outputs, hvdc_flows
from gridsens.network.network_model import Network
from gridsens.network.per_unit import current_pu_to_amps
from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)

NAN = math.nan

_LEG_INDEX = {
    BranchType.TRANSFORMER_LEG_1: 0,
    BranchType.TRANSFORMER_LEG_2: 1,
    BranchType.TRANSFORMER_LEG_3: 2,
}


def _amps(i_pu: float, nominal_v: float, s_base: float) -> float:
    return NAN if math.isnan(i_pu) else current_pu_to_amps(i_pu, nominal_v, s_base)


def _write_buses(network: Network, grid: GridModel) -> None:
    for bus in network.buses:
        if bus.fictitious:
            continue
        for node_id in [bus.id, *bus.original_ids]:
            node = grid.find(node_id)
            if node is None:
                continue
            if bus.disabled:
                node.v, node.angle = NAN, NAN
            else:
                node.v = bus.v * bus.nominal_v
                node.angle = math.degrees(bus.angle)


def _write_branches(network: Network, grid: GridModel, flows: list[BranchFlow]) -> None:
    s_base = network.base_power
    for branch, flow in zip(network.branches, flows):
        nominal_v1 = network.buses[branch.bus1_num].nominal_v if branch.bus1_num is not None else NAN
        nominal_v2 = network.buses[branch.bus2_num].nominal_v if branch.bus2_num is not None else NAN
        p1, q1, p2, q2 = (x * s_base for x in (flow.p1, flow.q1, flow.p2, flow.q2))
        i1 = _amps(flow.i1, nominal_v1, s_base)
        i2 = _amps(flow.i2, nominal_v2, s_base)

        if branch.branch_type in _LEG_INDEX:
            leg = grid.get(branch.original_ids[0]).legs[_LEG_INDEX[branch.branch_type]]
            leg.p, leg.q, leg.i = p1, q1, i1
            _write_tap(branch, leg)
            continue

        source = grid.get(branch.id)
        if branch.branch_type == BranchType.DANGLING_LINE:
            source.p, source.q, source.i = p1, q1, i1
            continue
        if branch.branch_type == BranchType.SWITCH:
            source.p1, source.q1, source.p2, source.q2 = p1, q1, p2, q2
            continue
        source.p1, source.q1, source.i1 = p1, q1, i1
        source.p2, source.q2, source.i2 = p2, q2, i2
        if branch.branch_type == BranchType.TRANSFORMER_2:
            _write_tap(branch, source)


def _write_tap(branch, transformer) -> None:
    if not branch.pi_model.has_taps:
        return
    tap_changer = transformer.phase_tap_changer or transformer.ratio_tap_changer
    tap_changer.tap_position = branch.pi_model.tap_position


def _write_injections(network: Network, grid: GridModel, flows: list[BranchFlow]) -> None:
    s_base = network.base_power
    outputs = generator_outputs(network, flows)
    for gen in network.generators:
        source = grid.get(gen.id)
        if gen.disabled or network.buses[gen.bus_num].disabled:
            source.q = NAN
            if not gen.converter:
                source.p = NAN
            continue
        p, q = outputs.get(gen.num, (NAN, NAN))
        source.q = -q * s_base
        # Converter active power comes from the HVDC line
        if not gen.converter:
            source.p = -p * s_base

    for load in network.loads:
        source = grid.get(load.id)
        if load.disabled or network.buses[load.bus_num].disabled:
            source.p, source.q = NAN, NAN
        else:
            source.p, source.q = load.target_p * s_base, load.target_q * s_base

    for shunt in network.shunts:
        source = grid.get(shunt.id)
        bus = network.buses[shunt.bus_num]
        if shunt.disabled or bus.disabled:
            source.p, source.q = NAN, NAN
            continue
        v2 = 1.0 if network.dc else bus.v * bus.v
        source.p = shunt.g * v2 * s_base
        source.q = -shunt.b * v2 * s_base
        source.section_count = shunt.section_count


def _write_hvdcs(network: Network, grid: GridModel) -> None:
    s_base = network.base_power
    emulated = hvdc_flows(network, network.dc)
    for hvdc in network.hvdcs:
        if hvdc.disabled:
            continue
        if hvdc.num in emulated:
            p = emulated[hvdc.num]
            p1, p2 = -p, p
        else:
            p1, p2 = hvdc.setpoint_injections()
        for station_id, bus_num, injection in (
            (hvdc.converter1_id, hvdc.bus1_num, p1),
            (hvdc.converter2_id, hvdc.bus2_num, p2),
        ):
            if bus_num is None:
                continue
            station = grid.converter_station(station_id)
            station.p = NAN if network.buses[bus_num].disabled else -injection * s_base


def write_network_state(network: Network, grid: GridModel, write_slack_terminal: bool = False) -> None:
    """Copy voltages, flows and injections of ``network`` into ``grid``."""
    flows = compute_branch_flows(network)
    _write_buses(network, grid)
    _write_branches(network, grid, flows)
    _write_injections(network, grid, flows)
    _write_hvdcs(network, grid)
    if write_slack_terminal:
        reference = network.reference_bus
        if reference is not None and reference.voltage_level_id is not None:
            grid.voltage_level(reference.voltage_level_id).slack_terminal = reference.id
    logger.debug("Wrote state of network '%s' to grid '%s'", network.id, grid.id)
