"""Load flow results.

Values are physical: kV, degrees, MW, MVar, A. Branches with both sides
disconnected report NaN; with one side disconnected, 0.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gridsens.network.flows import compute_branch_flows
from gridsens.network.network_model import Network
from gridsens.network.per_unit import current_pu_to_amps


class SolverStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATION_REACHED = "max_iteration_reached"
    SOLVER_FAILED = "solver_failed"
    NO_CALCULATION = "no_calculation"


def _finite_or_none(value: float) -> float | None:
    return None if value is None or math.isnan(value) else round(value, 6)


@dataclass
class BusResult:
    id: str
    v: float  # kV
    angle: float  # degrees

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "v": _finite_or_none(self.v), "angle": _finite_or_none(self.angle)}


@dataclass
class BranchResult:
    id: str
    p1: float
    q1: float
    i1: float
    p2: float
    q2: float
    i2: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            **{k: _finite_or_none(getattr(self, k)) for k in ("p1", "q1", "i1", "p2", "q2", "i2")},
        }


@dataclass
class ComponentResult:
    """Outcome of the load flow of one synchronous component."""
    network_id: str
    num_cc: int
    num_sc: int
    status: SolverStatus
    iterations: int = 0
    outer_loop_iterations: int = 0
    slack_bus_ids: list[str] = field(default_factory=list)
    slack_bus_active_power_mismatch: float = 0.0  # MW
    distributed_active_power: float = 0.0  # MW
    buses: list[BusResult] = field(default_factory=list)
    branches: list[BranchResult] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status == SolverStatus.CONVERGED

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_id": self.network_id,
            "num_cc": self.num_cc,
            "num_sc": self.num_sc,
            "status": self.status.value,
            "iterations": self.iterations,
            "outer_loop_iterations": self.outer_loop_iterations,
            "slack_bus_ids": list(self.slack_bus_ids),
            "slack_bus_active_power_mismatch": round(self.slack_bus_active_power_mismatch, 6),
            "distributed_active_power": round(self.distributed_active_power, 6),
            "buses": [b.to_dict() for b in self.buses],
            "branches": [b.to_dict() for b in self.branches],
        }


@dataclass
class LoadFlowResult:
    components: list[ComponentResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when at least one component converged."""
        return any(c.converged for c in self.components)

    @property
    def main(self) -> ComponentResult | None:
        for c in self.components:
            if c.num_cc == 0 and c.num_sc == 0:
                return c
        return None

    def bus(self, bus_id: str) -> BusResult:
        for c in self.components:
            for b in c.buses:
                if b.id == bus_id:
                    return b
        raise KeyError(f"Bus '{bus_id}' not found in results")

    def branch(self, branch_id: str) -> BranchResult:
        for c in self.components:
            for b in c.branches:
                if b.id == branch_id:
                    return b
        raise KeyError(f"Branch '{branch_id}' not found in results")

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "components": [c.to_dict() for c in self.components]}


def bus_results(network: Network) -> list[BusResult]:
    results = []
    for bus in network.buses:
        if bus.disabled:
            results.append(BusResult(bus.id, math.nan, math.nan))
        else:
            results.append(BusResult(bus.id, bus.v * bus.nominal_v, math.degrees(bus.angle)))
    return results


def branch_results(network: Network, dc: bool | None = None) -> list[BranchResult]:
    s_base = network.base_power
    def amps(i: float, bus_num: int | None) -> float:
        # 0 and NaN need no base
        if bus_num is None or math.isnan(i):
            return i
        return current_pu_to_amps(i, network.buses[bus_num].nominal_v, s_base)

    results = []
    for branch, flow in zip(network.branches, compute_branch_flows(network, dc)):
        results.append(BranchResult(
            id=branch.id,
            p1=flow.p1 * s_base,
            q1=flow.q1 * s_base,
            i1=amps(flow.i1, branch.bus1_num),
            p2=flow.p2 * s_base,
            q2=flow.q2 * s_base,
            i2=amps(flow.i2, branch.bus2_num),
        ))
    return results
