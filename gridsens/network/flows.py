"""Branch flows and bus balances of a solved network.

Flows are per-unit. A branch with both sides disconnected has NaN flows;
a branch with exactly one side disconnected carries nothing (0 on both
sides). Flows on zero-impedance branches are not given by the pi-model:
they are recovered from the bus balances along a spanning tree of each
zero-impedance group, loop branches of the group carrying 0.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import networkx as nx
import numpy as np

from gridsens.equations.terms import closed_branch_flows, dc_branch_flow, dc_susceptance
from gridsens.network.elements import Branch, VoltageControlRole
from gridsens.network.network_model import Network

NAN = math.nan

_REACTIVE_ROOTS = (VoltageControlRole.CONTROLLER, VoltageControlRole.CONTROLLED)


@dataclass
class BranchFlow:
    p1: float
    q1: float
    i1: float
    p2: float
    q2: float
    i2: float

    @classmethod
    def nan(cls) -> BranchFlow:
        return cls(NAN, NAN, NAN, NAN, NAN, NAN)

    @classmethod
    def zero(cls) -> BranchFlow:
        return cls(0.0, 0.0, 0.0, 0.0, 0.0, 0.0)


def branch_dc_susceptance(network: Network, branch: Branch) -> float:
    params = network.parameters
    pi = branch.pi_model
    return dc_susceptance(
        branch.id, pi.r, pi.x, pi.r1, params.dc_approximation_type, params.dc_use_transformer_ratio
    )


def _closed_flow(network: Network, branch: Branch, dc: bool) -> BranchFlow:
    bus1 = network.buses[branch.bus1_num]
    bus2 = network.buses[branch.bus2_num]
    pi = branch.pi_model
    if dc:
        p1 = float(dc_branch_flow(branch_dc_susceptance(network, branch), bus1.angle, bus2.angle, pi.a1))
        pf = network.parameters.dc_power_factor
        i = abs(p1) / pf
        return BranchFlow(p1, NAN, i, -p1, NAN, i)
    p1, q1, p2, q2 = closed_branch_flows(
        bus1.v, bus1.angle, bus2.v, bus2.angle, pi.r1, pi.a1, pi.y, pi.ksi, pi.g1, pi.b1, pi.g2, pi.b2
    )
    return BranchFlow(
        float(p1), float(q1), math.hypot(p1, q1) / bus1.v,
        float(p2), float(q2), math.hypot(p2, q2) / bus2.v,
    )


def hvdc_flows(network: Network, dc: bool = False) -> dict[int, float]:
    """Active power flowing from side 1 to side 2 of each AC-emulated HVDC line.

    The AC model clamps the flow to the line rating, the linear DC model does not.
    """
    flows: dict[int, float] = {}
    for hvdc in network.hvdcs:
        if not hvdc_emulation_active(network, hvdc.num):
            continue
        bus1 = network.buses[hvdc.bus1_num]
        bus2 = network.buses[hvdc.bus2_num]
        p = hvdc.p0 + hvdc.droop * (bus1.angle - bus2.angle)
        flows[hvdc.num] = float(p if dc else np.clip(p, -hvdc.max_p, hvdc.max_p))
    return flows


def hvdc_emulation_active(network: Network, hvdc_num: int) -> bool:
    hvdc = network.hvdcs[hvdc_num]
    if hvdc.disabled or not hvdc.ac_emulation or not network.parameters.hvdc_ac_emulation:
        return False
    if hvdc.bus1_num is None or hvdc.bus2_num is None:
        return False
    return not (network.buses[hvdc.bus1_num].disabled or network.buses[hvdc.bus2_num].disabled)


def bus_targets(network: Network, dc: bool) -> tuple[np.ndarray, np.ndarray]:
    n = len(network.buses)
    target_p = np.zeros(n)
    target_q = np.zeros(n)
    for bus in network.buses:
        if bus.disabled:
            continue
        target_p[bus.num] = network.bus_target_p(bus.num)
        if not dc:
            target_q[bus.num] = network.bus_target_q(bus.num)
    for hvdc in network.hvdcs:
        if hvdc.disabled or hvdc_emulation_active(network, hvdc.num):
            continue
        # A converter on a disabled bus stops the transfer; a side in another network keeps it
        sides = [n for n in (hvdc.bus1_num, hvdc.bus2_num) if n is not None]
        if any(network.buses[n].disabled for n in sides):
            continue
        p1, p2 = hvdc.setpoint_injections()
        if hvdc.bus1_num is not None:
            target_p[hvdc.bus1_num] += p1
        if hvdc.bus2_num is not None:
            target_p[hvdc.bus2_num] += p2
    return target_p, target_q


def _shunt_powers(network: Network, dc: bool) -> tuple[np.ndarray, np.ndarray]:
    n = len(network.buses)
    p = np.zeros(n)
    q = np.zeros(n)
    if dc:
        return p, q
    for bus in network.buses:
        if bus.disabled:
            continue
        v2 = bus.v * bus.v
        for shunt in network.bus_shunts(bus.num):
            p[bus.num] += shunt.g * v2
            q[bus.num] -= shunt.b * v2
    return p, q


def compute_branch_flows(network: Network, dc: bool | None = None) -> list[BranchFlow]:
    """Flows of every branch, indexed by branch num."""
    if dc is None:
        dc = network.dc
    flows: list[BranchFlow] = []
    zero_impedance: list[Branch] = []
    for branch in network.branches:
        if network.is_branch_connected(branch):
            if branch.zero_impedance:
                zero_impedance.append(branch)
                flows.append(BranchFlow.zero())
            else:
                flows.append(_closed_flow(network, branch, dc))
        elif network.is_branch_partially_connected(branch):
            flows.append(BranchFlow.zero())
        else:
            flows.append(BranchFlow.nan())
    if zero_impedance:
        _zero_impedance_flows(network, flows, zero_impedance, dc)
    return flows


def _leaving_powers(network: Network, flows: list[BranchFlow], dc: bool) -> tuple[np.ndarray, np.ndarray]:
    """Power leaving each bus through branches, shunts and emulated HVDC lines."""
    p, q = _shunt_powers(network, dc)
    for branch, flow in zip(network.branches, flows):
        if not network.is_branch_connected(branch):
            continue
        p[branch.bus1_num] += flow.p1
        p[branch.bus2_num] += flow.p2
        if not dc:
            q[branch.bus1_num] += flow.q1
            q[branch.bus2_num] += flow.q2
    for hvdc_num, hp in hvdc_flows(network, dc).items():
        hvdc = network.hvdcs[hvdc_num]
        p[hvdc.bus1_num] += hp
        p[hvdc.bus2_num] -= hp
    return p, q


def _zero_impedance_flows(network: Network, flows: list[BranchFlow], branches: list[Branch], dc: bool) -> None:
    target_p, target_q = bus_targets(network, dc)
    leaving_p, leaving_q = _leaving_powers(network, flows, dc)
    # Surplus each bus must export through its zero-impedance branches
    surplus_p = target_p - leaving_p
    surplus_q = target_q - leaving_q

    graph = nx.MultiGraph()
    for branch in branches:
        graph.add_edge(branch.bus1_num, branch.bus2_num, key=branch.num)

    for component in nx.connected_components(graph):
        members = sorted(component)
        root_p = next((n for n in members if network.buses[n].slack), members[0])
        _tree_flows(network, graph.subgraph(members), members, {root_p: 1.0}, surplus_p, flows, "p")
        if not dc:
            absorbers = _reactive_absorbers(network, members) or {
                next((n for n in members if network.voltage_control_role(n) in _REACTIVE_ROOTS), root_p): 1.0
            }
            _tree_flows(network, graph.subgraph(members), members, absorbers, surplus_q, flows, "q")


def _reactive_range(gen) -> float:
    q_range = gen.max_q - gen.min_q
    return q_range if math.isfinite(q_range) else 1.0


def _reactive_absorbers(network: Network, members: list[int]) -> dict[int, float]:
    """Share of the group reactive imbalance taken by each bus of voltage-controlling generators.

    Shares are proportional to the summed reactive range of the bus
    generators, so a merged control spreads its output over all of them.
    """
    ranges: dict[int, float] = {}
    for n in members:
        controlling = [
            network.generators[g] for g in network.buses[n].generator_nums
            if network.generator_controls_voltage(network.generators[g])
        ]
        if controlling:
            ranges[n] = sum(_reactive_range(g) for g in controlling)
    total = sum(ranges.values())
    if not ranges:
        return {}
    if total <= 0:
        return {n: 1.0 / len(ranges) for n in ranges}
    return {n: r / total for n, r in ranges.items()}


def _tree_flows(
    network: Network,
    graph: nx.MultiGraph,
    members: list[int],
    absorbers: dict[int, float],
    surplus: np.ndarray,
    flows: list[BranchFlow],
    attribute: str,
) -> None:
    # Absorbers take the group imbalance by share (slack or voltage controllers)
    s = {n: float(surplus[n]) for n in members}
    imbalance = sum(s.values())
    for n, share in absorbers.items():
        s[n] -= imbalance * share
    root = next(iter(absorbers))

    parent_edge: dict[int, tuple[int, int]] = {}
    order = [root]
    for parent, child in nx.bfs_edges(graph, root):
        key = min(graph[parent][child])
        parent_edge[child] = (parent, key)
        order.append(child)

    subtree = dict(s)
    for child in reversed(order[1:]):
        parent, key = parent_edge[child]
        amount = subtree[child]
        subtree[parent] += amount
        branch = network.branches[key]
        flow = flows[key]
        # ``amount`` leaves ``child`` towards ``parent``
        side1_value = amount if branch.bus1_num == child else -amount
        setattr(flow, f"{attribute}1", side1_value)
        setattr(flow, f"{attribute}2", -side1_value)
        _update_currents(network, branch, flow)


def _update_currents(network: Network, branch: Branch, flow: BranchFlow) -> None:
    v1 = network.buses[branch.bus1_num].v
    v2 = network.buses[branch.bus2_num].v
    q1 = 0.0 if math.isnan(flow.q1) else flow.q1
    q2 = 0.0 if math.isnan(flow.q2) else flow.q2
    flow.i1 = math.hypot(flow.p1, q1) / v1
    flow.i2 = math.hypot(flow.p2, q2) / v2


def bus_mismatches(network: Network, flows: list[BranchFlow], dc: bool | None = None) -> tuple[np.ndarray, np.ndarray]:
    """Power each bus must additionally inject (p, q) to balance the solved flows.

    Close to 0 on solved buses, the slack power on slack buses and the
    reactive output of voltage controllers on controller buses.
    """
    if dc is None:
        dc = network.dc
    target_p, target_q = bus_targets(network, dc)
    leaving_p, leaving_q = _leaving_powers(network, flows, dc)
    return leaving_p - target_p, leaving_q - target_q


def generator_outputs(network: Network, flows: list[BranchFlow], dc: bool | None = None) -> dict[int, tuple[float, float]]:
    """Active and reactive output of every enabled generator.

    Slack buses spread their mismatch equally over their generators;
    voltage-controlling generators share the bus reactive mismatch
    proportionally to their reactive range.
    """
    if dc is None:
        dc = network.dc
    dp, dq = bus_mismatches(network, flows, dc)
    outputs: dict[int, tuple[float, float]] = {}
    for bus in network.buses:
        gens = [network.generators[n] for n in bus.generator_nums if not network.generators[n].disabled]
        if bus.disabled or not gens:
            continue
        extra_p = dp[bus.num] / len(gens) if bus.slack else 0.0
        controlling = [g for g in gens if network.generator_controls_voltage(g)]
        ranges = [_reactive_range(g) for g in controlling]
        total_range = sum(ranges)
        for gen in gens:
            q = gen.target_q
            if dc:
                q = NAN
            elif gen in controlling:
                share = ranges[controlling.index(gen)] / total_range if total_range > 0 else 1.0 / len(controlling)
                q = dq[bus.num] * share
            outputs[gen.num] = (gen.target_p + extra_p, q)
    return outputs
