"""Contingency, remedial action and operator strategy requests."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ContingencyElementType(str, Enum):
    BRANCH = "branch"
    LINE = "line"
    TWO_WINDINGS_TRANSFORMER = "two_windings_transformer"
    THREE_WINDINGS_TRANSFORMER = "three_windings_transformer"
    DANGLING_LINE = "dangling_line"
    GENERATOR = "generator"
    LOAD = "load"
    SHUNT_COMPENSATOR = "shunt_compensator"
    HVDC_LINE = "hvdc_line"
    BUS = "bus"
    SWITCH = "switch"


class ContingencyElement(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: ContingencyElementType


class Contingency(BaseModel):
    """Named set of simultaneous element outages."""

    model_config = ConfigDict(frozen=True)

    id: str
    elements: tuple[ContingencyElement, ...] = Field(min_length=1)

    @classmethod
    def branch(cls, branch_id: str, contingency_id: str | None = None) -> Contingency:
        return cls(
            id=contingency_id or branch_id,
            elements=(ContingencyElement(id=branch_id, type=ContingencyElementType.BRANCH),),
        )


class ContingencyContextType(str, Enum):
    NONE = "none"  # pre-contingency state only
    ALL = "all"  # pre-contingency and every contingency
    ONLY_CONTINGENCIES = "only_contingencies"
    SPECIFIC = "specific"


class ContingencyContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    context_type: ContingencyContextType = ContingencyContextType.ALL
    contingency_id: str | None = None

    @model_validator(mode="after")
    def _check_id(self) -> ContingencyContext:
        if (self.context_type == ContingencyContextType.SPECIFIC) != (self.contingency_id is not None):
            raise ValueError("A contingency id is required by, and only by, the 'specific' context")
        return self

    @classmethod
    def none(cls) -> ContingencyContext:
        return cls(context_type=ContingencyContextType.NONE)

    @classmethod
    def all(cls) -> ContingencyContext:
        return cls(context_type=ContingencyContextType.ALL)

    @classmethod
    def only_contingencies(cls) -> ContingencyContext:
        return cls(context_type=ContingencyContextType.ONLY_CONTINGENCIES)

    @classmethod
    def specific(cls, contingency_id: str) -> ContingencyContext:
        return cls(context_type=ContingencyContextType.SPECIFIC, contingency_id=contingency_id)

    def includes_pre_contingency(self) -> bool:
        return self.context_type in (ContingencyContextType.NONE, ContingencyContextType.ALL)

    def includes(self, contingency_id: str) -> bool:
        if self.context_type == ContingencyContextType.SPECIFIC:
            return self.contingency_id == contingency_id
        return self.context_type in (ContingencyContextType.ALL, ContingencyContextType.ONLY_CONTINGENCIES)


class ActionType(str, Enum):
    SWITCH = "switch"
    TERMINALS_CONNECTION = "terminals_connection"
    PHASE_TAP_CHANGER_POSITION = "phase_tap_changer_position"


class Action(BaseModel):
    """Remedial topology or tap action.

    SWITCH and TERMINALS_CONNECTION use ``open``; TERMINALS_CONNECTION may
    restrict itself to one ``side`` of a branch. PHASE_TAP_CHANGER_POSITION
    sets ``tap_position``, or shifts it when ``relative`` is set.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    type: ActionType
    element_id: str
    open: bool | None = None
    side: int | None = Field(default=None, ge=1, le=2)
    tap_position: int | None = None
    relative: bool = False

    @model_validator(mode="after")
    def _check_fields(self) -> Action:
        if self.type == ActionType.PHASE_TAP_CHANGER_POSITION:
            if self.tap_position is None:
                raise ValueError(f"Action '{self.id}' needs a tap position")
        elif self.open is None:
            raise ValueError(f"Action '{self.id}' needs an open/close flag")
        return self


class OperatorStrategyCondition(str, Enum):
    TRUE = "true"
    ANY_VIOLATION = "any_violation"


class OperatorStrategy(BaseModel):
    """Actions applied after one contingency, when ``condition`` holds."""

    model_config = ConfigDict(frozen=True)

    id: str
    contingency_context: ContingencyContext
    action_ids: tuple[str, ...] = Field(min_length=1)
    condition: OperatorStrategyCondition = OperatorStrategyCondition.TRUE

    @model_validator(mode="after")
    def _check_context(self) -> OperatorStrategy:
        if self.contingency_context.context_type != ContingencyContextType.SPECIFIC:
            raise ValueError(f"Operator strategy '{self.id}' must target one specific contingency")
        return self

    @property
    def contingency_id(self) -> str:
        return self.contingency_context.contingency_id
