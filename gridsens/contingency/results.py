"""Security analysis results (physical units, NaN for unreachable values)."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gridsens.contingency.limits import LimitViolation
from gridsens.solver.results import BranchResult, BusResult, SolverStatus


class StateStatus(str, Enum):
    SUCCESS = "success"
    # The state leaves the network unchanged; values are the pre-contingency ones
    NO_IMPACT = "no_impact"
    FAILED = "failed"


@dataclass
class StateResult:
    status: StateStatus
    solver_status: SolverStatus | None = None
    buses: list[BusResult] = field(default_factory=list)
    branches: list[BranchResult] = field(default_factory=list)
    violations: list[LimitViolation] = field(default_factory=list)
    disabled_bus_ids: list[str] = field(default_factory=list)

    def bus(self, bus_id: str) -> BusResult:
        for b in self.buses:
            if b.id == bus_id:
                return b
        raise KeyError(f"Bus '{bus_id}' not found in results")

    def branch(self, branch_id: str) -> BranchResult:
        for b in self.branches:
            if b.id == branch_id:
                return b
        raise KeyError(f"Branch '{branch_id}' not found in results")

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "solver_status": self.solver_status.value if self.solver_status else None,
            "buses": [b.to_dict() for b in self.buses],
            "branches": [b.to_dict() for b in self.branches],
            "violations": [v.to_dict() for v in self.violations],
            "disabled_bus_ids": list(self.disabled_bus_ids),
        }


@dataclass
class PostContingencyResult:
    contingency_id: str
    state: StateResult

    @property
    def status(self) -> StateStatus:
        return self.state.status

    def to_dict(self) -> dict[str, Any]:
        return {"contingency_id": self.contingency_id, **self.state.to_dict()}


@dataclass
class OperatorStrategyResult:
    operator_strategy_id: str
    contingency_id: str
    state: StateResult

    @property
    def status(self) -> StateStatus:
        return self.state.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "operator_strategy_id": self.operator_strategy_id,
            "contingency_id": self.contingency_id,
            **self.state.to_dict(),
        }


@dataclass
class SecurityAnalysisResult:
    network_id: str
    pre_contingency: StateResult
    post_contingency: list[PostContingencyResult] = field(default_factory=list)
    operator_strategies: list[OperatorStrategyResult] = field(default_factory=list)

    def contingency(self, contingency_id: str) -> PostContingencyResult:
        for r in self.post_contingency:
            if r.contingency_id == contingency_id:
                return r
        raise KeyError(f"Contingency '{contingency_id}' not found in results")

    def operator_strategy(self, strategy_id: str) -> OperatorStrategyResult:
        for r in self.operator_strategies:
            if r.operator_strategy_id == strategy_id:
                return r
        raise KeyError(f"Operator strategy '{strategy_id}' not found in results")

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_id": self.network_id,
            "pre_contingency": self.pre_contingency.to_dict(),
            "post_contingency": [r.to_dict() for r in self.post_contingency],
            "operator_strategies": [r.to_dict() for r in self.operator_strategies],
        }
