"""Sensitivity analysis results.

Values are in physical units: function references in MW, MVar, A or kV;
sensitivities per MW (injections, HVDC set points), per MVar, per degree
(phase shift) or per kV (target voltage). NaN marks a value that cannot be
computed in a state (function or variable isolated from the slack).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gridsens.contingency.results import StateStatus
from gridsens.sensitivity.factors import SensitivityFactor


class SensitivityStateType(str, Enum):
    PRE_CONTINGENCY = "pre_contingency"
    POST_CONTINGENCY = "post_contingency"
    POST_OPERATOR_STRATEGY = "post_operator_strategy"


@dataclass(frozen=True)
class SensitivityState:
    state_type: SensitivityStateType = SensitivityStateType.PRE_CONTINGENCY
    contingency_id: str | None = None
    operator_strategy_id: str | None = None

    @classmethod
    def pre_contingency(cls) -> SensitivityState:
        return cls()

    @classmethod
    def post_contingency(cls, contingency_id: str) -> SensitivityState:
        return cls(SensitivityStateType.POST_CONTINGENCY, contingency_id)

    @classmethod
    def post_operator_strategy(cls, contingency_id: str, operator_strategy_id: str) -> SensitivityState:
        return cls(SensitivityStateType.POST_OPERATOR_STRATEGY, contingency_id, operator_strategy_id)

    @property
    def id(self) -> str:
        if self.state_type == SensitivityStateType.PRE_CONTINGENCY:
            return "pre-contingency"
        if self.state_type == SensitivityStateType.POST_CONTINGENCY:
            return self.contingency_id
        return f"{self.contingency_id}/{self.operator_strategy_id}"


def _json_float(value: float) -> float | None:
    return None if math.isnan(value) else value


@dataclass
class SensitivityValue:
    factor_index: int
    state: SensitivityState
    value: float
    function_reference: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "factor_index": self.factor_index,
            "contingency_id": self.state.contingency_id,
            "operator_strategy_id": self.state.operator_strategy_id,
            "value": _json_float(self.value),
            "function_reference": _json_float(self.function_reference),
        }


@dataclass
class SensitivityStateResult:
    state: SensitivityState
    status: StateStatus


@dataclass
class SensitivityAnalysisResult:
    factors: list[SensitivityFactor]
    states: list[SensitivityStateResult] = field(default_factory=list)
    values: list[SensitivityValue] = field(default_factory=list)
    _index: dict[tuple[int, SensitivityState], SensitivityValue] = field(default_factory=dict, repr=False)

    def add(self, value: SensitivityValue) -> None:
        self.values.append(value)
        self._index[(value.factor_index, value.state)] = value

    def _find(self, function_id: str, variable_id: str, state: SensitivityState) -> SensitivityValue:
        for i, factor in enumerate(self.factors):
            if factor.function_id == function_id and factor.variable_id == variable_id:
                value = self._index.get((i, state))
                if value is not None:
                    return value
        raise KeyError(
            f"No sensitivity of '{function_id}' to '{variable_id}' in state '{state.id}'"
        )

    @staticmethod
    def _state(contingency_id: str | None, operator_strategy_id: str | None) -> SensitivityState:
        if operator_strategy_id is not None:
            return SensitivityState.post_operator_strategy(contingency_id, operator_strategy_id)
        if contingency_id is not None:
            return SensitivityState.post_contingency(contingency_id)
        return SensitivityState.pre_contingency()

    def value(
        self,
        function_id: str,
        variable_id: str,
        contingency_id: str | None = None,
        operator_strategy_id: str | None = None,
    ) -> float:
        return self._find(function_id, variable_id, self._state(contingency_id, operator_strategy_id)).value

    def function_reference(
        self,
        function_id: str,
        variable_id: str,
        contingency_id: str | None = None,
        operator_strategy_id: str | None = None,
    ) -> float:
        return self._find(
            function_id, variable_id, self._state(contingency_id, operator_strategy_id)
        ).function_reference

    def status(self, contingency_id: str | None = None, operator_strategy_id: str | None = None) -> StateStatus:
        state = self._state(contingency_id, operator_strategy_id)
        for s in self.states:
            if s.state == state:
                return s.status
        raise KeyError(f"State '{state.id}' not found in results")

    def values_of(self, contingency_id: str | None = None, operator_strategy_id: str | None = None) -> list[SensitivityValue]:
        state = self._state(contingency_id, operator_strategy_id)
        return [v for v in self.values if v.state == state]

    def to_dict(self) -> dict[str, Any]:
        return {
            "factors": [f.model_dump(mode="json") for f in self.factors],
            "states": [
                {
                    "contingency_id": s.state.contingency_id,
                    "operator_strategy_id": s.state.operator_strategy_id,
                    "status": s.status.value,
                }
                for s in self.states
            ],
            "values": [v.to_dict() for v in self.values],
        }
