"""Immutable analysis parameters.

Parameter objects are validated once at construction and never mutated
afterwards; an invalid value raises ``pydantic.ValidationError`` (a
``ValueError``) before any computation starts.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from gridsens.config import settings


class BalanceType(str, Enum):
    PROPORTIONAL_TO_GENERATION_P_MAX = "proportional_to_generation_p_max"
    PROPORTIONAL_TO_GENERATION_P = "proportional_to_generation_p"
    PROPORTIONAL_TO_GENERATION_PARTICIPATION_FACTOR = "proportional_to_generation_participation_factor"
    PROPORTIONAL_TO_GENERATION_REMAINING_MARGIN = "proportional_to_generation_remaining_margin"
    PROPORTIONAL_TO_LOAD = "proportional_to_load"


class SlackBusSelectionMode(str, Enum):
    MOST_MESHED = "most_meshed"
    FIRST = "first"
    NAME = "name"
    LARGEST_GENERATOR = "largest_generator"


class SlackDistributionKey(str, Enum):
    """How the slack mismatch is split between several slack buses."""
    EQUAL = "equal"
    MAX_GENERATION = "max_generation"
    LOAD = "load"


class VoltageInitMode(str, Enum):
    UNIFORM_VALUES = "uniform_values"
    PREVIOUS_VALUES = "previous_values"
    DC_VALUES = "dc_values"


class ConnectedComponentMode(str, Enum):
    MAIN = "main"
    ALL = "all"


class SlackBusLossBehavior(str, Enum):
    """What a contingency losing the reference slack bus does."""
    RELOCATE = "relocate"
    NO_IMPACT = "no_impact"


class StateVectorScalingMode(str, Enum):
    NONE = "none"
    MAX_VOLTAGE_CHANGE = "max_voltage_change"


class DcApproximationType(str, Enum):
    IGNORE_R = "ignore_r"
    IGNORE_G = "ignore_g"


class LoadFlowParameters(BaseModel):
    """Load flow options shared by every analysis."""

    model_config = ConfigDict(frozen=True)

    base_power: float = Field(default_factory=lambda: settings.base_power_mva, gt=0,
                              description="System base power Sb in MVA")

    # Newton-Raphson
    newton_raphson_conv_eps: float = Field(default=1e-6, gt=0,
                                           description="Max per-equation mismatch in p.u.")
    max_newton_raphson_iterations: int = Field(default=30, ge=1)
    max_outer_loop_iterations: int = Field(default=20, ge=1)
    state_vector_scaling: StateVectorScalingMode = StateVectorScalingMode.NONE
    max_voltage_change: float = Field(default=0.1, gt=0, description="p.u. per iteration")
    voltage_init_mode: VoltageInitMode = VoltageInitMode.UNIFORM_VALUES

    # Slack
    distributed_slack: bool = True
    balance_type: BalanceType = BalanceType.PROPORTIONAL_TO_GENERATION_P_MAX
    slack_bus_selection_mode: SlackBusSelectionMode = SlackBusSelectionMode.MOST_MESHED
    slack_bus_ids: tuple[str, ...] = ()
    max_slack_bus_count: int = Field(default=1, ge=1)
    slack_distribution_key: SlackDistributionKey = SlackDistributionKey.EQUAL
    slack_bus_p_max_mismatch: float = Field(default=1.0, ge=0, description="MW")
    countries_to_balance: tuple[str, ...] = ()
    slack_bus_loss_behavior: SlackBusLossBehavior = SlackBusLossBehavior.RELOCATE

    # Controls
    use_reactive_limits: bool = True
    phase_shifter_regulation_on: bool = False
    transformer_voltage_control_on: bool = False
    shunt_compensator_voltage_control_on: bool = False
    hvdc_ac_emulation: bool = True

    # DC approximation
    dc_use_transformer_ratio: bool = True
    dc_approximation_type: DcApproximationType = DcApproximationType.IGNORE_R
    dc_power_factor: float = Field(default=1.0, gt=0, le=1)

    # Model building
    low_impedance_threshold: float = Field(default=1e-8, gt=0, description="p.u.")
    nominal_voltage_resolution: float = Field(default=0.0, ge=0, lt=1,
                                              description="Relative tolerance for snapping nominal voltages")
    connected_component_mode: ConnectedComponentMode = ConnectedComponentMode.MAIN
    post_processors: tuple[str, ...] = ()

    # Output
    write_state: bool = True
    write_slack_terminal: bool = False
    max_workers: int = Field(default_factory=lambda: settings.max_workers, ge=1)

    @model_validator(mode="after")
    def _check_slack_selection(self) -> LoadFlowParameters:
        if self.slack_bus_selection_mode == SlackBusSelectionMode.NAME and not self.slack_bus_ids:
            raise ValueError("Slack bus selection mode 'name' requires at least one slack bus id")
        return self


class SensitivityAnalysisParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    load_flow: LoadFlowParameters = Field(default_factory=LoadFlowParameters)
    threshold: float = Field(default=0.0, ge=0,
                             description="Sensitivity values below this magnitude are reported as 0")


class SecurityAnalysisParameters(BaseModel):
    model_config = ConfigDict(frozen=True)

    load_flow: LoadFlowParameters = Field(default_factory=LoadFlowParameters)
    limit_reduction: float = Field(default=1.0, gt=0, le=1,
                                   description="Factor applied to every current limit")
    low_voltage_tolerance: float = Field(default=0.0, ge=0, description="kV")
    high_voltage_tolerance: float = Field(default=0.0, ge=0, description="kV")
