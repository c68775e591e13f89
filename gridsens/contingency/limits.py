"""Limit violation checks on a solved state.

Current limits are compared in amperes against ``limit × limit_reduction``
on each side of a branch; voltage limits in kV against the voltage level
limits widened by the configured tolerances.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

from gridsens.network.network_model import Network
from gridsens.parameters import SecurityAnalysisParameters
from gridsens.solver.results import BranchResult, BusResult


class LimitType(str, Enum):
    CURRENT = "current"
    LOW_VOLTAGE = "low_voltage"
    HIGH_VOLTAGE = "high_voltage"


@dataclass
class LimitViolation:
    subject_id: str
    limit_type: LimitType
    limit: float
    value: float
    limit_reduction: float = 1.0
    side: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "limit_type": self.limit_type.value,
            "limit": round(self.limit, 6),
            "value": round(self.value, 6),
            "limit_reduction": self.limit_reduction,
            "side": self.side,
        }


def current_violations(
    network: Network,
    branches: list[BranchResult],
    limit_reduction: float = 1.0,
) -> list[LimitViolation]:
    violations = []
    for branch, result in zip(network.branches, branches):
        for side, limit, i in ((1, branch.current_limit1, result.i1), (2, branch.current_limit2, result.i2)):
            if limit is None or math.isnan(i):
                continue
            if i > limit * limit_reduction:
                violations.append(LimitViolation(branch.id, LimitType.CURRENT, limit, i, limit_reduction, side))
    return violations


def voltage_violations(
    network: Network,
    buses: list[BusResult],
    low_tolerance: float = 0.0,
    high_tolerance: float = 0.0,
) -> list[LimitViolation]:
    violations = []
    for bus, result in zip(network.buses, buses):
        if math.isnan(result.v):
            continue
        if bus.low_voltage_limit is not None and result.v < bus.low_voltage_limit - low_tolerance:
            violations.append(LimitViolation(bus.id, LimitType.LOW_VOLTAGE, bus.low_voltage_limit, result.v))
        if bus.high_voltage_limit is not None and result.v > bus.high_voltage_limit + high_tolerance:
            violations.append(LimitViolation(bus.id, LimitType.HIGH_VOLTAGE, bus.high_voltage_limit, result.v))
    return violations


def detect_violations(
    network: Network,
    buses: list[BusResult],
    branches: list[BranchResult],
    parameters: SecurityAnalysisParameters,
    dc: bool = False,
) -> list[LimitViolation]:
    """All violations of a state. DC states have no voltage magnitude, so only currents are checked."""
    violations = current_violations(network, branches, parameters.limit_reduction)
    if not dc:
        violations += voltage_violations(
            network, buses, parameters.low_voltage_tolerance, parameters.high_voltage_tolerance
        )
    return violations
