"""Calculation elements of the per-unit network model.

Elements live in flat lists owned by ``Network`` and refer to each other by
numeric index (``num``), never by object reference. All electrical values
are per-unit on the system base; angles are radians.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gridsens.network.pi_model import PiModel


class BranchType(str, Enum):
    LINE = "line"
    TRANSFORMER_2 = "transformer_2"
    TRANSFORMER_LEG_1 = "transformer_leg_1"
    TRANSFORMER_LEG_2 = "transformer_leg_2"
    TRANSFORMER_LEG_3 = "transformer_leg_3"
    DANGLING_LINE = "dangling_line"
    SWITCH = "switch"


class VoltageControlRole(str, Enum):
    NONE = "none"
    CONTROLLER = "controller"
    CONTROLLED = "controlled"
    FOLLOWER = "follower"


class PhaseControlMode(str, Enum):
    FIXED_TAP = "fixed_tap"
    CONTINUOUS = "continuous"
    DISCRETE = "discrete"


class DiscreteMode(str, Enum):
    """Control stage of a discrete controller (taps, shunt sections)."""
    OFF = "off"
    CONTINUOUS = "continuous"
    DISCRETE = "discrete"


@dataclass(eq=False)
class Bus:
    id: str
    nominal_v: float  # kV
    num: int = -1
    voltage_level_id: str | None = None
    country: str | None = None
    v: float = 1.0
    angle: float = 0.0
    disabled: bool = False
    fictitious: bool = False
    slack: bool = False
    reference: bool = False
    low_voltage_limit: float | None = None  # kV
    high_voltage_limit: float | None = None  # kV
    generator_nums: list[int] = field(default_factory=list)
    load_nums: list[int] = field(default_factory=list)
    shunt_nums: list[int] = field(default_factory=list)
    branch_nums: list[int] = field(default_factory=list)
    # Fixed injections not owned by a generator or load (dangling line boundary, HVDC setpoints)
    fixed_p: float = 0.0
    fixed_q: float = 0.0
    original_ids: list[str] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(eq=False)
class Generator:
    """Generator-like injection: synchronous machine or VSC converter."""
    id: str
    bus_num: int
    target_p: float
    max_p: float
    min_p: float = 0.0
    target_q: float = 0.0
    target_v: float = math.nan  # p.u. of the controlled bus
    voltage_control: bool = False
    controlled_bus_num: int | None = None
    min_q: float = -math.inf
    max_q: float = math.inf
    participating: bool = True
    participation_factor: float = 0.0
    initial_target_p: float = 0.0
    num: int = -1
    disabled: bool = False
    # Set by the reactive limits outer loop when the generator is blocked at a limit
    q_limited: bool = False
    # Reactive power computed at the end of a load flow
    calculated_q: float = math.nan
    converter: bool = False
    original_ids: list[str] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(eq=False)
class Load:
    id: str
    bus_num: int
    target_p: float
    target_q: float = 0.0
    initial_target_p: float = 0.0
    num: int = -1
    disabled: bool = False
    participating: bool = True
    original_ids: list[str] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(eq=False)
class Shunt:
    """Shunt compensator. ``b`` is the current susceptance, one per section in ``section_b``."""
    id: str
    bus_num: int
    g: float
    b: float
    section_b: list[float] = field(default_factory=list)  # cumulated b for 0..max sections
    section_count: int = 0
    voltage_control: bool = False
    controlled_bus_num: int | None = None
    target_v: float = math.nan
    discrete_mode: DiscreteMode = DiscreteMode.OFF
    num: int = -1
    disabled: bool = False
    original_ids: list[str] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)

    def round_b_to_closest_section(self) -> bool:
        """Snap ``b`` to the closest section. Returns True if the section count changed."""
        if not self.section_b:
            return False
        distances = [abs(b - self.b) for b in self.section_b]
        new_count = distances.index(min(distances))
        changed = new_count != self.section_count
        self.section_count = new_count
        self.b = self.section_b[new_count]
        return changed


@dataclass(eq=False)
class Branch:
    id: str
    branch_type: BranchType
    bus1_num: int | None
    bus2_num: int | None
    pi_model: PiModel
    num: int = -1
    disabled: bool = False
    connected1: bool = True
    connected2: bool = True
    zero_impedance: bool = False
    # Phase control
    phase_control_mode: PhaseControlMode = PhaseControlMode.FIXED_TAP
    phase_control_target_p: float = math.nan  # p.u., flow at side 1
    # Transformer voltage control
    voltage_control_mode: DiscreteMode = DiscreteMode.OFF
    controlled_bus_num: int | None = None
    target_v: float = math.nan
    # Permanent current limits in A
    current_limit1: float | None = None
    current_limit2: float | None = None
    original_ids: list[str] = field(default_factory=list)
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def has_phase_control(self) -> bool:
        return self.phase_control_mode != PhaseControlMode.FIXED_TAP

    @property
    def has_voltage_control(self) -> bool:
        return self.voltage_control_mode != DiscreteMode.OFF


@dataclass(eq=False)
class Hvdc:
    """HVDC link between two converter buses of the same network.

    In setpoint mode the converters inject fixed powers. In AC emulation
    mode the power flowing from side 1 to side 2 follows
    ``p0 + droop · (angle1 - angle2)``.
    """
    id: str
    bus1_num: int | None
    bus2_num: int | None
    converter1_id: str
    converter2_id: str
    active_setpoint: float  # p.u., positive from side 1 to side 2
    max_p: float
    loss_factor1: float = 0.0
    loss_factor2: float = 0.0
    ac_emulation: bool = False
    droop: float = 0.0  # p.u./rad
    p0: float = 0.0
    num: int = -1
    disabled: bool = False
    original_ids: list[str] = field(default_factory=list)

    def setpoint_injections(self) -> tuple[float, float]:
        """Active injections (side 1, side 2) in setpoint mode, converter losses applied."""
        p = self.active_setpoint
        if p >= 0:
            return -p, p * (1 - self.loss_factor1) * (1 - self.loss_factor2)
        return -p * (1 - self.loss_factor1) * (1 - self.loss_factor2), p
