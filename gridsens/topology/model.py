"""Detailed grid model consumed by the reducer.

This is the breaker/busbar-level description of a grid: voltage levels,
nodes (busbar sections and connectivity nodes), switches, and the equipment
attached to nodes. Quantities are physical: kV, MW, MVar, ohm, siemens,
degrees, amperes.

Every element carries writable result attributes (``p``, ``q``, ``i``, or
per-side ``p1``/``q1``/``i1``...) filled in by ``Network.update_state``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from gridsens.core.errors import StructuralError

NAN = math.nan


class SwitchKind(str, Enum):
    BREAKER = "breaker"
    DISCONNECTOR = "disconnector"
    LOAD_BREAK_SWITCH = "load_break_switch"


class PhaseRegulationMode(str, Enum):
    FIXED_TAP = "fixed_tap"
    ACTIVE_POWER_CONTROL = "active_power_control"
    CURRENT_LIMITER = "current_limiter"


class HvdcConvertersMode(str, Enum):
    SIDE_1_RECTIFIER_SIDE_2_INVERTER = "side_1_rectifier_side_2_inverter"
    SIDE_1_INVERTER_SIDE_2_RECTIFIER = "side_1_inverter_side_2_rectifier"


# ----------------------------------------------------------------------
# Substation topology
# ----------------------------------------------------------------------

@dataclass
class VoltageLevel:
    id: str
    nominal_v: float  # kV
    low_voltage_limit: float | None = None  # kV
    high_voltage_limit: float | None = None  # kV
    country: str | None = None
    # Written back when write_slack_terminal is requested
    slack_terminal: str | None = None


@dataclass
class Node:
    """Busbar section or connectivity node."""
    id: str
    voltage_level_id: str
    v: float = NAN  # kV, written back
    angle: float = NAN  # degrees, written back


@dataclass
class Switch:
    id: str
    voltage_level_id: str
    node1: str
    node2: str
    open: bool = False
    retained: bool = False
    kind: SwitchKind = SwitchKind.BREAKER
    p1: float = NAN
    q1: float = NAN
    p2: float = NAN
    q2: float = NAN


# ----------------------------------------------------------------------
# Branches
# ----------------------------------------------------------------------

@dataclass
class TapStep:
    """One tap position. Corrections r/x/g/b are in percent of the nominal values."""
    rho: float = 1.0
    alpha: float = 0.0  # degrees
    r: float = 0.0
    x: float = 0.0
    g: float = 0.0
    b: float = 0.0


@dataclass
class RatioTapChanger:
    low_tap: int
    tap_position: int
    steps: list[TapStep]
    regulating: bool = False
    target_v: float = NAN  # kV
    regulating_node: str | None = None


@dataclass
class PhaseTapChanger:
    low_tap: int
    tap_position: int
    steps: list[TapStep]
    regulation_mode: PhaseRegulationMode = PhaseRegulationMode.FIXED_TAP
    regulation_value: float = NAN  # MW, flow on side 1
    regulating: bool = False


@dataclass
class Line:
    id: str
    node1: str
    node2: str
    r: float
    x: float
    g1: float = 0.0
    b1: float = 0.0
    g2: float = 0.0
    b2: float = 0.0
    connected1: bool = True
    connected2: bool = True
    current_limit1: float | None = None  # A
    current_limit2: float | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    p1: float = NAN
    q1: float = NAN
    i1: float = NAN
    p2: float = NAN
    q2: float = NAN
    i2: float = NAN


@dataclass
class TwoWindingsTransformer:
    """Impedances are expressed on side 2 (ohm / siemens)."""
    id: str
    node1: str
    node2: str
    r: float
    x: float
    rated_u1: float  # kV
    rated_u2: float
    g: float = 0.0
    b: float = 0.0
    ratio_tap_changer: RatioTapChanger | None = None
    phase_tap_changer: PhaseTapChanger | None = None
    connected1: bool = True
    connected2: bool = True
    current_limit1: float | None = None
    current_limit2: float | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    p1: float = NAN
    q1: float = NAN
    i1: float = NAN
    p2: float = NAN
    q2: float = NAN
    i2: float = NAN


@dataclass
class ThreeWindingsTransformerLeg:
    """One winding, impedances expressed at the star point voltage ``rated_u0``."""
    node: str
    r: float
    x: float
    rated_u: float
    g: float = 0.0
    b: float = 0.0
    ratio_tap_changer: RatioTapChanger | None = None
    phase_tap_changer: PhaseTapChanger | None = None
    connected: bool = True
    current_limit: float | None = None
    p: float = NAN
    q: float = NAN
    i: float = NAN


@dataclass
class ThreeWindingsTransformer:
    id: str
    leg1: ThreeWindingsTransformerLeg
    leg2: ThreeWindingsTransformerLeg
    leg3: ThreeWindingsTransformerLeg
    rated_u0: float
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def legs(self) -> tuple[ThreeWindingsTransformerLeg, ...]:
        return self.leg1, self.leg2, self.leg3


@dataclass
class DanglingLine:
    """Line to an outside boundary where a fixed p0/q0 is consumed."""
    id: str
    node: str
    r: float
    x: float
    p0: float
    q0: float
    g: float = 0.0
    b: float = 0.0
    connected: bool = True
    current_limit: float | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    p: float = NAN
    q: float = NAN
    i: float = NAN


# ----------------------------------------------------------------------
# Injections
# ----------------------------------------------------------------------

@dataclass
class Generator:
    id: str
    node: str
    target_p: float  # MW
    max_p: float
    min_p: float = 0.0
    target_q: float = 0.0
    target_v: float = NAN  # kV
    voltage_regulator_on: bool = False
    regulating_node: str | None = None
    min_q: float = -9999.0
    max_q: float = 9999.0
    participate: bool = True
    participation_factor: float = 0.0
    connected: bool = True
    properties: dict[str, Any] = field(default_factory=dict)
    p: float = NAN
    q: float = NAN


@dataclass
class Load:
    id: str
    node: str
    p0: float  # MW
    q0: float = 0.0
    connected: bool = True
    properties: dict[str, Any] = field(default_factory=dict)
    p: float = NAN
    q: float = NAN


@dataclass
class ShuntCompensator:
    id: str
    node: str
    b_per_section: float  # S
    section_count: int
    maximum_section_count: int
    g_per_section: float = 0.0
    voltage_regulator_on: bool = False
    target_v: float = NAN  # kV
    regulating_node: str | None = None
    connected: bool = True
    properties: dict[str, Any] = field(default_factory=dict)
    p: float = NAN
    q: float = NAN


@dataclass
class VscConverterStation:
    id: str
    node: str
    loss_factor: float = 0.0  # percent
    voltage_regulator_on: bool = False
    target_v: float = NAN
    target_q: float = 0.0
    min_q: float = -9999.0
    max_q: float = 9999.0
    connected: bool = True
    p: float = NAN
    q: float = NAN


@dataclass
class LccConverterStation:
    id: str
    node: str
    loss_factor: float = 0.0
    power_factor: float = 1.0
    connected: bool = True
    p: float = NAN
    q: float = NAN


@dataclass
class HvdcAcEmulation:
    droop: float  # MW/degree
    p0: float  # MW
    enabled: bool = True


@dataclass
class HvdcLine:
    id: str
    converter1: str
    converter2: str
    active_setpoint: float  # MW
    max_p: float
    r: float = 0.0
    nominal_v: float = 400.0
    converters_mode: HvdcConvertersMode = HvdcConvertersMode.SIDE_1_RECTIFIER_SIDE_2_INVERTER
    ac_emulation: HvdcAcEmulation | None = None


# ----------------------------------------------------------------------
# Grid container
# ----------------------------------------------------------------------

_COLLECTIONS = (
    "voltage_levels", "nodes", "switches", "lines", "two_windings_transformers",
    "three_windings_transformers", "dangling_lines", "generators", "loads",
    "shunts", "vsc_converter_stations", "lcc_converter_stations", "hvdc_lines",
)


@dataclass
class GridModel:
    """Read-only view of a detailed grid with terminal write-back."""
    id: str = "grid"
    voltage_levels: list[VoltageLevel] = field(default_factory=list)
    nodes: list[Node] = field(default_factory=list)
    switches: list[Switch] = field(default_factory=list)
    lines: list[Line] = field(default_factory=list)
    two_windings_transformers: list[TwoWindingsTransformer] = field(default_factory=list)
    three_windings_transformers: list[ThreeWindingsTransformer] = field(default_factory=list)
    dangling_lines: list[DanglingLine] = field(default_factory=list)
    generators: list[Generator] = field(default_factory=list)
    loads: list[Load] = field(default_factory=list)
    shunts: list[ShuntCompensator] = field(default_factory=list)
    vsc_converter_stations: list[VscConverterStation] = field(default_factory=list)
    lcc_converter_stations: list[LccConverterStation] = field(default_factory=list)
    hvdc_lines: list[HvdcLine] = field(default_factory=list)
    _index: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.reindex()

    def reindex(self) -> None:
        """Rebuild the id index. Call after appending elements to a collection."""
        self._index = {}
        for name in _COLLECTIONS:
            for element in getattr(self, name):
                if element.id in self._index:
                    raise StructuralError(f"Duplicate identifier '{element.id}'")
                self._index[element.id] = element

    def find(self, element_id: str) -> Any | None:
        return self._index.get(element_id)

    def get(self, element_id: str) -> Any:
        element = self._index.get(element_id)
        if element is None:
            raise KeyError(f"Element '{element_id}' not found in grid '{self.id}'")
        return element

    def __contains__(self, element_id: str) -> bool:
        return element_id in self._index

    def voltage_level(self, vl_id: str) -> VoltageLevel:
        vl = self._index.get(vl_id)
        if not isinstance(vl, VoltageLevel):
            raise StructuralError(f"Voltage level '{vl_id}' not found")
        return vl

    def node(self, node_id: str) -> Node:
        node = self._index.get(node_id)
        if not isinstance(node, Node):
            raise StructuralError(f"Node '{node_id}' not found")
        return node

    def converter_station(self, station_id: str) -> VscConverterStation | LccConverterStation:
        station = self._index.get(station_id)
        if not isinstance(station, (VscConverterStation, LccConverterStation)):
            raise StructuralError(f"Converter station '{station_id}' not found")
        return station

    def elements(self) -> Iterator[Any]:
        for name in _COLLECTIONS:
            yield from getattr(self, name)

    # ------------------------------------------------------------------
    # Construction from plain configuration
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> GridModel:
        """Build a grid from a JSON-like configuration.

        Keys mirror the collection names (``voltage_levels``, ``nodes``,
        ``lines``...); each entry is the keyword arguments of the element.
        Tap changers, legs and AC emulation may be nested dicts.

        Raises:
            StructuralError: a top-level key is not a known collection.
        """
        unknown = sorted(set(config) - {"id", *_COLLECTIONS})
        if unknown:
            raise StructuralError(f"Unknown grid collection(s): {', '.join(unknown)}")

        def tap_changer(kind: type, data: dict | None) -> Any:
            if data is None:
                return None
            data = dict(data)
            data["steps"] = [TapStep(**s) for s in data.get("steps", [])]
            if kind is PhaseTapChanger and "regulation_mode" in data:
                data["regulation_mode"] = PhaseRegulationMode(data["regulation_mode"])
            return kind(**data)

        def transformer_kwargs(data: dict) -> dict:
            data = dict(data)
            data["ratio_tap_changer"] = tap_changer(RatioTapChanger, data.get("ratio_tap_changer"))
            data["phase_tap_changer"] = tap_changer(PhaseTapChanger, data.get("phase_tap_changer"))
            return data

        def three_windings(data: dict) -> ThreeWindingsTransformer:
            data = dict(data)
            for leg in ("leg1", "leg2", "leg3"):
                data[leg] = ThreeWindingsTransformerLeg(**transformer_kwargs(data[leg]))
            return ThreeWindingsTransformer(**data)

        def hvdc_line(data: dict) -> HvdcLine:
            data = dict(data)
            if data.get("ac_emulation") is not None:
                data["ac_emulation"] = HvdcAcEmulation(**data["ac_emulation"])
            if "converters_mode" in data:
                data["converters_mode"] = HvdcConvertersMode(data["converters_mode"])
            return HvdcLine(**data)

        def switch(data: dict) -> Switch:
            data = dict(data)
            if "kind" in data:
                data["kind"] = SwitchKind(data["kind"])
            return Switch(**data)

        return cls(
            id=config.get("id", "grid"),
            voltage_levels=[VoltageLevel(**d) for d in config.get("voltage_levels", [])],
            nodes=[Node(**d) for d in config.get("nodes", [])],
            switches=[switch(d) for d in config.get("switches", [])],
            lines=[Line(**d) for d in config.get("lines", [])],
            two_windings_transformers=[
                TwoWindingsTransformer(**transformer_kwargs(d))
                for d in config.get("two_windings_transformers", [])
            ],
            three_windings_transformers=[
                three_windings(d) for d in config.get("three_windings_transformers", [])
            ],
            dangling_lines=[DanglingLine(**d) for d in config.get("dangling_lines", [])],
            generators=[Generator(**d) for d in config.get("generators", [])],
            loads=[Load(**d) for d in config.get("loads", [])],
            shunts=[ShuntCompensator(**d) for d in config.get("shunts", [])],
            vsc_converter_stations=[VscConverterStation(**d) for d in config.get("vsc_converter_stations", [])],
            lcc_converter_stations=[LccConverterStation(**d) for d in config.get("lcc_converter_stations", [])],
            hvdc_lines=[hvdc_line(d) for d in config.get("hvdc_lines", [])],
        )
