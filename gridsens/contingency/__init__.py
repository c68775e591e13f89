"""Contingencies, remedial actions, connectivity analysis and security analysis."""

from gridsens.contingency.model import (
    Action,
    ActionType,
    Contingency,
    ContingencyContext,
    ContingencyContextType,
    ContingencyElement,
    ContingencyElementType,
    OperatorStrategy,
    OperatorStrategyCondition,
)
from gridsens.contingency.results import (
    OperatorStrategyResult,
    PostContingencyResult,
    SecurityAnalysisResult,
    StateResult,
    StateStatus,
)
from gridsens.contingency.security_analysis import run_security_analysis

__all__ = [
    "Action",
    "ActionType",
    "Contingency",
    "ContingencyContext",
    "ContingencyContextType",
    "ContingencyElement",
    "ContingencyElementType",
    "OperatorStrategy",
    "OperatorStrategyCondition",
    "OperatorStrategyResult",
    "PostContingencyResult",
    "SecurityAnalysisResult",
    "StateResult",
    "StateStatus",
    "run_security_analysis",
]
