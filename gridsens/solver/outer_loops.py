"""Outer loops run after each converged Newton-Raphson.

An outer loop inspects the solved network and may change it (distribute
the slack power, block a generator at a reactive limit, round a continuous
tap to a real position). An UNSTABLE answer means the network changed and
Newton-Raphson must run again on a rebuilt equation system.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum

from gridsens.network.elements import DiscreteMode, PhaseControlMode
from gridsens.network.flows import bus_mismatches, compute_branch_flows
from gridsens.network.network_model import Network
from gridsens.network.slack import P_RESIDUE_EPS, distribute_active_power
from gridsens.network.voltage_control import update_voltage_controls
from gridsens.parameters import LoadFlowParameters

logger = logging.getLogger(__name__)

Q_LIMIT_EPS = 1e-6  # p.u.


class OuterLoopStatus(str, Enum):
    STABLE = "stable"
    UNSTABLE = "unstable"


def slack_bus_mismatch(network: Network, dc: bool = False) -> float:
    """Active power the slack buses inject on top of their targets (p.u.)."""
    flows = compute_branch_flows(network, dc)
    dp, _ = bus_mismatches(network, flows, dc)
    return float(sum(dp[bus.num] for bus in network.slack_buses))


class OuterLoop(ABC):
    name: str = ""

    def initialize(self, network: Network) -> None:
        pass

    @abstractmethod
    def check(self, network: Network) -> OuterLoopStatus:
        """Inspect the solved ``network`` and adjust it if needed."""


class DistributedSlackOuterLoop(OuterLoop):
    name = "distributed_slack"

    def __init__(self, parameters: LoadFlowParameters):
        self.parameters = parameters
        self.distributed = 0.0

    def initialize(self, network: Network) -> None:
        self.distributed = 0.0

    def check(self, network: Network) -> OuterLoopStatus:
        params = self.parameters
        mismatch = slack_bus_mismatch(network)
        if abs(mismatch) * network.base_power < params.slack_bus_p_max_mismatch:
            return OuterLoopStatus.STABLE
        result = distribute_active_power(network, mismatch, params.balance_type, params.countries_to_balance)
        self.distributed += result.distributed
        if abs(result.distributed) <= P_RESIDUE_EPS:
            # Nothing left to move, the slack keeps the rest
            return OuterLoopStatus.STABLE
        logger.info(
            "Slack bus active power (%.3f MW) distributed in %d iteration(s)",
            result.distributed * network.base_power, result.iterations,
        )
        return OuterLoopStatus.UNSTABLE


class ReactiveLimitsOuterLoop(OuterLoop):
    """Switch voltage controller buses to fixed reactive power at their limits, and back.

    A bus blocked at its maximum reactive power goes back to voltage
    control when its controlled voltage rises above the target (below for
    the minimum), at most ``MAX_SWITCHES_PQ_PV`` times per bus.
    """

    name = "reactive_limits"
    MAX_SWITCHES_PQ_PV = 3

    def __init__(self):
        self._blocked: dict[int, str] = {}
        self._switches: dict[int, int] = {}

    def initialize(self, network: Network) -> None:
        self._blocked = {}
        self._switches = {}

    def _pv_to_pq(self, network: Network, dq) -> bool:
        changed = False
        for bus in network.buses:
            if bus.disabled:
                continue
            gens = [
                g for g in (network.generators[n] for n in bus.generator_nums)
                if network.generator_controls_voltage(g)
            ]
            if not gens:
                continue
            q = dq[bus.num]
            max_q = sum(g.max_q for g in gens)
            min_q = sum(g.min_q for g in gens)
            if q > max_q + Q_LIMIT_EPS:
                limit = "max"
            elif q < min_q - Q_LIMIT_EPS:
                limit = "min"
            else:
                continue
            for gen in gens:
                gen.q_limited = True
                gen.target_q = gen.max_q if limit == "max" else gen.min_q
            self._blocked[bus.num] = limit
            changed = True
            logger.info(
                "Bus '%s' switched PV -> PQ at %s reactive limit (%.3f MVar)",
                bus.id, limit, (max_q if limit == "max" else min_q) * network.base_power,
            )
        return changed

    def _pq_to_pv(self, network: Network, just_blocked: set[int]) -> bool:
        changed = False
        for bus_num, limit in list(self._blocked.items()):
            bus = network.buses[bus_num]
            if bus_num in just_blocked or bus.disabled:
                continue
            control = network.generator_voltage_control_of_bus(bus_num)
            gens = [
                g for g in (network.generators[n] for n in bus.generator_nums)
                if g.q_limited and g.voltage_control and not g.disabled
            ]
            if control is None or not gens:
                continue
            v = network.buses[control.controlled_bus_num].v
            back = v > control.target_v if limit == "max" else v < control.target_v
            if not back:
                continue
            count = self._switches.get(bus_num, 0)
            if count >= self.MAX_SWITCHES_PQ_PV:
                logger.debug("Bus '%s' reached the PQ -> PV switch limit", bus.id)
                continue
            self._switches[bus_num] = count + 1
            for gen in gens:
                gen.q_limited = False
            del self._blocked[bus_num]
            changed = True
            logger.info("Bus '%s' switched PQ -> PV (v=%.4f p.u.)", bus.id, v)
        return changed

    def check(self, network: Network) -> OuterLoopStatus:
        flows = compute_branch_flows(network, dc=False)
        _, dq = bus_mismatches(network, flows, dc=False)
        before = set(self._blocked)
        changed = self._pv_to_pq(network, dq)
        just_blocked = set(self._blocked) - before
        changed = self._pq_to_pv(network, just_blocked) or changed
        if not changed:
            return OuterLoopStatus.STABLE
        update_voltage_controls(network)
        return OuterLoopStatus.UNSTABLE


class PhaseControlOuterLoop(OuterLoop):
    """Round continuous phase shifts to the closest tap and freeze them."""

    name = "phase_control"

    def check(self, network: Network) -> OuterLoopStatus:
        status = OuterLoopStatus.STABLE
        for branch in network.branches:
            if branch.phase_control_mode != PhaseControlMode.CONTINUOUS or not branch.pi_model.has_taps:
                continue
            branch.pi_model.round_a1_to_closest_tap()
            branch.phase_control_mode = PhaseControlMode.DISCRETE
            logger.debug("Phase shifter '%s' set to tap %d", branch.id, branch.pi_model.tap_position)
            status = OuterLoopStatus.UNSTABLE
        return status


class TransformerVoltageControlOuterLoop(OuterLoop):
    name = "transformer_voltage_control"

    def check(self, network: Network) -> OuterLoopStatus:
        status = OuterLoopStatus.STABLE
        for branch in network.branches:
            if branch.voltage_control_mode != DiscreteMode.CONTINUOUS or not branch.pi_model.has_taps:
                continue
            branch.pi_model.round_r1_to_closest_tap()
            branch.voltage_control_mode = DiscreteMode.DISCRETE
            logger.debug("Transformer '%s' set to tap %d", branch.id, branch.pi_model.tap_position)
            status = OuterLoopStatus.UNSTABLE
        return status


class ShuntVoltageControlOuterLoop(OuterLoop):
    name = "shunt_voltage_control"

    def check(self, network: Network) -> OuterLoopStatus:
        status = OuterLoopStatus.STABLE
        for shunt in network.shunts:
            if shunt.discrete_mode != DiscreteMode.CONTINUOUS:
                continue
            shunt.round_b_to_closest_section()
            shunt.discrete_mode = DiscreteMode.DISCRETE
            logger.debug("Shunt '%s' set to %d section(s)", shunt.id, shunt.section_count)
            status = OuterLoopStatus.UNSTABLE
        return status


def create_outer_loops(parameters: LoadFlowParameters) -> list[OuterLoop]:
    """Outer loops enabled by ``parameters``, in checking order."""
    loops: list[OuterLoop] = []
    if parameters.distributed_slack:
        loops.append(DistributedSlackOuterLoop(parameters))
    if parameters.use_reactive_limits:
        loops.append(ReactiveLimitsOuterLoop())
    if parameters.phase_shifter_regulation_on:
        loops.append(PhaseControlOuterLoop())
    if parameters.transformer_voltage_control_on:
        loops.append(TransformerVoltageControlOuterLoop())
    if parameters.shunt_compensator_voltage_control_on:
        loops.append(ShuntVoltageControlOuterLoop())
    return loops
