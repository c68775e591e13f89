"""Sensitivity factor requests."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gridsens.contingency.model import ContingencyContext


class SensitivityFunctionType(str, Enum):
    BRANCH_ACTIVE_POWER_1 = "branch_active_power_1"
    BRANCH_ACTIVE_POWER_2 = "branch_active_power_2"
    BRANCH_REACTIVE_POWER_1 = "branch_reactive_power_1"
    BRANCH_REACTIVE_POWER_2 = "branch_reactive_power_2"
    BRANCH_CURRENT_1 = "branch_current_1"
    BRANCH_CURRENT_2 = "branch_current_2"
    BUS_VOLTAGE = "bus_voltage"

    @property
    def side(self) -> int | None:
        if self == SensitivityFunctionType.BUS_VOLTAGE:
            return None
        return int(self.value[-1])

    @property
    def is_branch(self) -> bool:
        return self != SensitivityFunctionType.BUS_VOLTAGE


class SensitivityVariableType(str, Enum):
    INJECTION_ACTIVE_POWER = "injection_active_power"
    INJECTION_REACTIVE_POWER = "injection_reactive_power"
    TRANSFORMER_PHASE = "transformer_phase"
    BUS_TARGET_VOLTAGE = "bus_target_voltage"
    HVDC_LINE_ACTIVE_POWER = "hvdc_line_active_power"


DC_FUNCTION_TYPES = frozenset({
    SensitivityFunctionType.BRANCH_ACTIVE_POWER_1,
    SensitivityFunctionType.BRANCH_ACTIVE_POWER_2,
})

DC_VARIABLE_TYPES = frozenset({
    SensitivityVariableType.INJECTION_ACTIVE_POWER,
    SensitivityVariableType.TRANSFORMER_PHASE,
    SensitivityVariableType.HVDC_LINE_ACTIVE_POWER,
})


class SensitivityFactor(BaseModel):
    """One (function, variable) pair, computed in every state of ``contingency_context``.

    With ``variable_set`` set, ``variable_id`` names a ``SensitivityVariableSet``.
    """

    model_config = ConfigDict(frozen=True)

    function_type: SensitivityFunctionType
    function_id: str
    variable_type: SensitivityVariableType
    variable_id: str
    variable_set: bool = False
    contingency_context: ContingencyContext = Field(default_factory=ContingencyContext.all)

    @model_validator(mode="after")
    def _check_variable_set(self) -> SensitivityFactor:
        if self.variable_set and self.variable_type != SensitivityVariableType.INJECTION_ACTIVE_POWER:
            raise ValueError("Variable sets only apply to active power injections")
        return self


class WeightedVariable(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    weight: float


class SensitivityVariableSet(BaseModel):
    """Generation shift key: injections moved together, proportionally to their weights."""

    model_config = ConfigDict(frozen=True)

    id: str
    variables: tuple[WeightedVariable, ...] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_weights(self) -> SensitivityVariableSet:
        if sum(v.weight for v in self.variables) == 0:
            raise ValueError(f"Weights of variable set '{self.id}' sum to zero")
        return self

    def normalized(self) -> dict[str, float]:
        """Weight of each injection id, summing to 1."""
        total = sum(v.weight for v in self.variables)
        weights: dict[str, float] = {}
        for v in self.variables:
            weights[v.id] = weights.get(v.id, 0.0) + v.weight / total
        return weights
