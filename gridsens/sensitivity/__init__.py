"""Sensitivities of branch flows, currents and bus voltages to injections and controls."""

from gridsens.sensitivity.analysis import run_sensitivity_analysis
from gridsens.sensitivity.factors import (
    SensitivityFactor,
    SensitivityFunctionType,
    SensitivityVariableSet,
    SensitivityVariableType,
    WeightedVariable,
)
from gridsens.sensitivity.results import (
    SensitivityAnalysisResult,
    SensitivityState,
    SensitivityStateType,
    SensitivityValue,
)

__all__ = [
    "SensitivityAnalysisResult",
    "SensitivityFactor",
    "SensitivityFunctionType",
    "SensitivityState",
    "SensitivityStateType",
    "SensitivityValue",
    "SensitivityVariableSet",
    "SensitivityVariableType",
    "WeightedVariable",
    "run_sensitivity_analysis",
]
