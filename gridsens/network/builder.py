"""Build per-unit calculation networks from a detailed grid.

Steps:
1. Reduce nodes and switches to buses (``topology.reducer``), adding the
   fictitious star buses of three-winding transformers and the boundary
   buses of dangling lines.
2. Split buses into synchronous components (AC connectivity through closed
   branches) and connected components (also through HVDC lines).
3. Create one ``Network`` per synchronous component, largest first, with
   per-unit conversion of every element on the system base power and the
   (optionally snapped) nominal voltage of each bus.
4. Create voltage controls, merge them, pick slack buses and notify
   post-processors.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import networkx as nx

from gridsens.network.elements import (
    Branch,
    BranchType,
    Bus,
    DiscreteMode,
    Generator,
    Hvdc,
    Load,
    PhaseControlMode,
    Shunt,
)
from gridsens.network.network_model import Network
from gridsens.network.per_unit import (
    line_ratio,
    mw_to_pu,
    resolve_nominal_voltages,
    siemens_to_pu,
    transformer_ratio,
    z_base,
)
from gridsens.network.pi_model import PiModel, PiModelArray, SimplePiModel
from gridsens.network.post_processors import NetworkPostProcessor, find_post_processors
from gridsens.network.slack import select_slack_buses
from gridsens.network.voltage_control import VoltageControl, VoltageControlType, update_voltage_controls
from gridsens.parameters import LoadFlowParameters
from gridsens.topology.model import (
    DanglingLine,
    GridModel,
    HvdcConvertersMode,
    LccConverterStation,
    PhaseRegulationMode,
    PhaseTapChanger,
    RatioTapChanger,
    TapStep,
    ThreeWindingsTransformer,
)
from gridsens.topology.reducer import ReducedBus, reduce_topology

logger = logging.getLogger(__name__)


@dataclass
class _ProtoBus:
    key: int
    id: str
    nominal_v: float
    voltage_level_id: str | None = None
    country: str | None = None
    low_voltage_limit: float | None = None
    high_voltage_limit: float | None = None
    fictitious: bool = False
    original_ids: list[str] = field(default_factory=list)
    source: Any = None
    # MW / MVar consumed at the bus by a dangling line boundary
    fixed_load_p: float = 0.0
    fixed_load_q: float = 0.0


@dataclass
class _BranchSpec:
    id: str
    branch_type: BranchType
    key1: int
    key2: int
    pi_factory: Callable[[float, float], PiModel]
    source: Any
    connected1: bool = True
    connected2: bool = True
    closed: bool = True
    current_limit1: float | None = None
    current_limit2: float | None = None
    original_ids: list[str] = field(default_factory=list)
    ratio_tap_changer: RatioTapChanger | None = None
    phase_tap_changer: PhaseTapChanger | None = None
    switch: bool = False

    @property
    def ac_edge(self) -> bool:
        return self.closed and self.connected1 and self.connected2


def _pct(step: TapStep | None, attribute: str) -> float:
    return 1.0 + (getattr(step, attribute) / 100.0 if step is not None else 0.0)


def _step(tap_changer: RatioTapChanger | PhaseTapChanger | None) -> TapStep | None:
    if tap_changer is None:
        return None
    return tap_changer.steps[tap_changer.tap_position - tap_changer.low_tap]


def _transformer_pi_factory(
    r: float, x: float, g: float, b: float,
    rated_u1: float, rated_u2: float,
    rtc: RatioTapChanger | None, ptc: PhaseTapChanger | None,
    s_base: float,
) -> Callable[[float, float], PiModel]:
    def factory(nominal_v1: float, nominal_v2: float) -> PiModel:
        zb = z_base(nominal_v2, s_base)

        def model(rstep: TapStep | None, pstep: TapStep | None) -> SimplePiModel:
            rho = (rstep.rho if rstep else 1.0) * (pstep.rho if pstep else 1.0)
            return SimplePiModel(
                r=r * _pct(rstep, "r") * _pct(pstep, "r") / zb,
                x=x * _pct(rstep, "x") * _pct(pstep, "x") / zb,
                g1=g * _pct(rstep, "g") * _pct(pstep, "g") * zb,
                b1=b * _pct(rstep, "b") * _pct(pstep, "b") * zb,
                rho=transformer_ratio(rated_u1, rated_u2, nominal_v1, nominal_v2, rho),
                alpha=math.radians(pstep.alpha) if pstep else 0.0,
            )

        if ptc is not None:
            rstep = _step(rtc)
            return PiModelArray([model(rstep, s) for s in ptc.steps], ptc.low_tap, ptc.tap_position)
        if rtc is not None:
            return PiModelArray([model(s, None) for s in rtc.steps], rtc.low_tap, rtc.tap_position)
        return model(None, None)

    return factory


class NetworkBuilder:
    """Build calculation networks from one grid model."""

    def __init__(
        self,
        grid: GridModel,
        parameters: LoadFlowParameters | None = None,
        post_processors: Iterable[NetworkPostProcessor] | None = None,
        retained_switch_ids: Iterable[str] = (),
    ):
        self.grid = grid
        self.parameters = parameters or LoadFlowParameters()
        self.post_processors = find_post_processors(self.parameters, post_processors)
        self.retained_switch_ids = set(retained_switch_ids)
        self._buses: list[_ProtoBus] = []
        self._node_key: dict[str, int] = {}
        self._branches: list[_BranchSpec] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(self) -> list[Network]:
        topology = reduce_topology(self.grid, self.retained_switch_ids)
        self._create_buses(topology.buses)
        self._create_branch_specs(topology.retained_switches)

        sync_components, cc_of_key = self._components()
        networks = []
        for num_sc, keys in enumerate(sync_components):
            networks.append(self._build_network(sorted(keys), cc_of_key[min(keys)], num_sc))
        logger.info(
            "Built %d network(s) from grid '%s': %s",
            len(networks), self.grid.id, ", ".join(f"{len(n.buses)} buses" for n in networks),
        )
        return networks

    # ------------------------------------------------------------------
    # Buses
    # ------------------------------------------------------------------

    def _create_buses(self, reduced_buses: list[ReducedBus]) -> None:
        grid = self.grid
        voltages = [vl.nominal_v for vl in grid.voltage_levels]
        voltages += [t3.rated_u0 for t3 in grid.three_windings_transformers]
        self._snap = resolve_nominal_voltages(voltages, self.parameters.nominal_voltage_resolution)

        for rbus in reduced_buses:
            vl = grid.voltage_level(rbus.voltage_level_id)
            key = len(self._buses)
            self._buses.append(_ProtoBus(
                key=key,
                id=rbus.id,
                nominal_v=self._snap[vl.nominal_v],
                voltage_level_id=vl.id,
                country=vl.country,
                low_voltage_limit=vl.low_voltage_limit,
                high_voltage_limit=vl.high_voltage_limit,
                original_ids=[n for n in rbus.node_ids if n != rbus.id],
                source=rbus,
            ))
            for node_id in rbus.node_ids:
                self._node_key[node_id] = key

        for t3 in grid.three_windings_transformers:
            self._buses.append(_ProtoBus(
                key=len(self._buses), id=f"{t3.id}_star", nominal_v=self._snap[t3.rated_u0],
                fictitious=True, source=t3,
            ))
        for dl in grid.dangling_lines:
            parent = self._buses[self._node_key[dl.node]]
            self._buses.append(_ProtoBus(
                key=len(self._buses), id=f"{dl.id}_boundary", nominal_v=parent.nominal_v,
                voltage_level_id=parent.voltage_level_id, country=parent.country,
                fictitious=True, source=dl, fixed_load_p=dl.p0, fixed_load_q=dl.q0,
            ))

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _create_branch_specs(self, retained_switches) -> None:
        grid = self.grid
        s_base = self.parameters.base_power
        key = self._node_key

        for line in grid.lines:
            def line_factory(nv1: float, nv2: float, line=line) -> PiModel:
                zb = z_base(nv2, s_base)
                return SimplePiModel(
                    r=line.r / zb, x=line.x / zb,
                    g1=line.g1 * zb, b1=line.b1 * zb, g2=line.g2 * zb, b2=line.b2 * zb,
                    rho=line_ratio(nv1, nv2),
                )
            self._branches.append(_BranchSpec(
                id=line.id, branch_type=BranchType.LINE, key1=key[line.node1], key2=key[line.node2],
                pi_factory=line_factory, source=line,
                connected1=line.connected1, connected2=line.connected2,
                current_limit1=line.current_limit1, current_limit2=line.current_limit2,
            ))

        for t2 in grid.two_windings_transformers:
            self._branches.append(_BranchSpec(
                id=t2.id, branch_type=BranchType.TRANSFORMER_2, key1=key[t2.node1], key2=key[t2.node2],
                pi_factory=_transformer_pi_factory(
                    t2.r, t2.x, t2.g, t2.b, t2.rated_u1, t2.rated_u2,
                    t2.ratio_tap_changer, t2.phase_tap_changer, s_base,
                ),
                source=t2, connected1=t2.connected1, connected2=t2.connected2,
                current_limit1=t2.current_limit1, current_limit2=t2.current_limit2,
                ratio_tap_changer=t2.ratio_tap_changer, phase_tap_changer=t2.phase_tap_changer,
            ))

        leg_types = (BranchType.TRANSFORMER_LEG_1, BranchType.TRANSFORMER_LEG_2, BranchType.TRANSFORMER_LEG_3)
        star_keys = {b.source.id: b.key for b in self._buses if isinstance(b.source, ThreeWindingsTransformer)}
        for t3 in grid.three_windings_transformers:
            for i, (leg, leg_type) in enumerate(zip(t3.legs, leg_types), start=1):
                self._branches.append(_BranchSpec(
                    id=f"{t3.id}_leg_{i}", branch_type=leg_type,
                    key1=key[leg.node], key2=star_keys[t3.id],
                    pi_factory=_transformer_pi_factory(
                        leg.r, leg.x, leg.g, leg.b, leg.rated_u, t3.rated_u0,
                        leg.ratio_tap_changer, leg.phase_tap_changer, s_base,
                    ),
                    source=leg, connected1=leg.connected, current_limit1=leg.current_limit,
                    original_ids=[t3.id],
                    ratio_tap_changer=leg.ratio_tap_changer, phase_tap_changer=leg.phase_tap_changer,
                ))

        boundary_keys = {b.source.id: b.key for b in self._buses if isinstance(b.source, DanglingLine)}
        for dl in grid.dangling_lines:
            def dl_factory(nv1: float, nv2: float, dl=dl) -> PiModel:
                zb = z_base(nv2, s_base)
                return SimplePiModel(
                    r=dl.r / zb, x=dl.x / zb,
                    g1=dl.g / 2 * zb, b1=dl.b / 2 * zb, g2=dl.g / 2 * zb, b2=dl.b / 2 * zb,
                )
            self._branches.append(_BranchSpec(
                id=dl.id, branch_type=BranchType.DANGLING_LINE,
                key1=key[dl.node], key2=boundary_keys[dl.id],
                pi_factory=dl_factory, source=dl, connected1=dl.connected,
                current_limit1=dl.current_limit,
            ))

        for switch in retained_switches:
            self._branches.append(_BranchSpec(
                id=switch.id, branch_type=BranchType.SWITCH,
                key1=key[switch.node1], key2=key[switch.node2],
                pi_factory=lambda nv1, nv2: SimplePiModel(),
                source=switch, closed=not switch.open, switch=True,
            ))

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def _hvdc_keys(self) -> list[tuple[int | None, int | None]]:
        result = []
        for hvdc in self.grid.hvdc_lines:
            sides = []
            for station_id in (hvdc.converter1, hvdc.converter2):
                station = self.grid.converter_station(station_id)
                sides.append(self._node_key[station.node] if station.connected else None)
            result.append((sides[0], sides[1]))
        return result

    def _components(self) -> tuple[list[set[int]], dict[int, int]]:
        graph = nx.Graph()
        graph.add_nodes_from(b.key for b in self._buses)
        graph.add_edges_from((s.key1, s.key2) for s in self._branches if s.ac_edge)

        def order(components: Iterable[set[int]]) -> list[set[int]]:
            return sorted(components, key=lambda c: (-len(c), min(self._buses[k].id for k in c)))

        sync_components = order(nx.connected_components(graph))

        cc_graph = graph.copy()
        cc_graph.add_edges_from((k1, k2) for k1, k2 in self._hvdc_keys() if k1 is not None and k2 is not None)
        cc_of_key: dict[int, int] = {}
        for num_cc, component in enumerate(order(nx.connected_components(cc_graph))):
            for k in component:
                cc_of_key[k] = num_cc
        return sync_components, cc_of_key

    # ------------------------------------------------------------------
    # Network creation
    # ------------------------------------------------------------------

    def _build_network(self, keys: list[int], num_cc: int, num_sc: int) -> Network:
        params = self.parameters
        s_base = params.base_power
        network = Network(f"{self.grid.id}_{num_cc}_{num_sc}", params, num_cc, num_sc, self.grid)
        bus_num: dict[int, int] = {}

        for k in keys:
            proto = self._buses[k]
            bus = network.add_bus(Bus(
                id=proto.id,
                nominal_v=proto.nominal_v,
                voltage_level_id=proto.voltage_level_id,
                country=proto.country,
                fictitious=proto.fictitious,
                low_voltage_limit=proto.low_voltage_limit,
                high_voltage_limit=proto.high_voltage_limit,
                fixed_p=-mw_to_pu(proto.fixed_load_p, s_base),
                fixed_q=-mw_to_pu(proto.fixed_load_q, s_base),
                original_ids=list(proto.original_ids),
            ))
            bus_num[k] = bus.num
            for pp in self.post_processors:
                pp.on_bus_added(proto.source, bus)

        self._add_branches(network, bus_num)
        self._add_injections(network, bus_num)
        self._add_hvdcs(network, bus_num)
        self._create_voltage_controls(network)
        update_voltage_controls(network)
        select_slack_buses(network, params)
        for pp in self.post_processors:
            pp.on_network_created(network)
        return network

    def _add_branches(self, network: Network, bus_num: dict[int, int]) -> None:
        params = self.parameters
        for spec in self._branches:
            # A branch across two networks belongs to the network of its connected side
            owner = spec.key2 if spec.connected2 and not spec.connected1 else spec.key1
            if owner not in bus_num:
                continue
            nv1 = self._buses[spec.key1].nominal_v
            nv2 = self._buses[spec.key2].nominal_v
            pi = spec.pi_factory(nv1, nv2)
            branch = Branch(
                id=spec.id,
                branch_type=spec.branch_type,
                bus1_num=bus_num.get(spec.key1),
                bus2_num=bus_num.get(spec.key2),
                pi_model=pi,
                connected1=spec.connected1 and spec.closed,
                connected2=spec.connected2 and spec.closed,
                current_limit1=spec.current_limit1,
                current_limit2=spec.current_limit2,
                original_ids=list(spec.original_ids),
            )
            branch.zero_impedance = spec.switch or math.hypot(pi.r, pi.x) < params.low_impedance_threshold
            self._configure_controls(network, branch, spec, bus_num)
            network.add_branch(branch)
            for pp in self.post_processors:
                pp.on_branch_added(spec.source, branch)

    def _configure_controls(
        self, network: Network, branch: Branch, spec: _BranchSpec, bus_num: dict[int, int]
    ) -> None:
        params = self.parameters
        ptc = spec.phase_tap_changer
        if ptc is not None and ptc.regulating:
            if ptc.regulation_mode == PhaseRegulationMode.ACTIVE_POWER_CONTROL and params.phase_shifter_regulation_on:
                branch.phase_control_mode = PhaseControlMode.CONTINUOUS
                branch.phase_control_target_p = mw_to_pu(ptc.regulation_value, params.base_power)
            elif ptc.regulation_mode == PhaseRegulationMode.CURRENT_LIMITER:
                logger.warning("Current limiter phase control of '%s' is not supported, tap kept fixed", spec.id)
        rtc = spec.ratio_tap_changer
        if rtc is not None and rtc.regulating and params.transformer_voltage_control_on:
            if ptc is not None:
                logger.warning(
                    "Transformer '%s' has both tap changers, ratio voltage control is ignored", spec.id
                )
                return
            controlled_key = self._node_key[rtc.regulating_node] if rtc.regulating_node else spec.key2
            if controlled_key not in bus_num:
                logger.warning("Transformer '%s' controls a bus outside its network, control ignored", spec.id)
                return
            branch.voltage_control_mode = DiscreteMode.CONTINUOUS
            branch.controlled_bus_num = bus_num[controlled_key]
            branch.target_v = rtc.target_v / self._buses[controlled_key].nominal_v

    def _controlled_bus(
        self, element_id: str, own_key: int, regulating_node: str | None, bus_num: dict[int, int]
    ) -> int:
        if regulating_node is None:
            return bus_num[own_key]
        controlled_key = self._node_key[regulating_node]
        if controlled_key not in bus_num:
            logger.warning(
                "Element '%s' regulates a bus outside its network, switching to local control", element_id
            )
            return bus_num[own_key]
        return bus_num[controlled_key]

    def _add_injections(self, network: Network, bus_num: dict[int, int]) -> None:
        grid = self.grid
        s_base = self.parameters.base_power

        def notify(source: Any, injection: Any) -> None:
            for pp in self.post_processors:
                pp.on_injection_added(source, injection)

        for gen in grid.generators:
            k = self._node_key[gen.node]
            if not gen.connected or k not in bus_num:
                continue
            controlled = self._controlled_bus(gen.id, k, gen.regulating_node, bus_num)
            voltage_control = gen.voltage_regulator_on
            if voltage_control and math.isnan(gen.target_v):
                logger.warning("Generator '%s' regulates voltage without a target, control ignored", gen.id)
                voltage_control = False
            target_p = mw_to_pu(gen.target_p, s_base)
            injection = network.add_generator(Generator(
                id=gen.id,
                bus_num=bus_num[k],
                target_p=target_p,
                initial_target_p=target_p,
                max_p=mw_to_pu(gen.max_p, s_base),
                min_p=mw_to_pu(gen.min_p, s_base),
                target_q=mw_to_pu(gen.target_q, s_base),
                target_v=gen.target_v / network.buses[controlled].nominal_v,
                voltage_control=voltage_control,
                controlled_bus_num=controlled,
                min_q=mw_to_pu(gen.min_q, s_base),
                max_q=mw_to_pu(gen.max_q, s_base),
                participating=gen.participate,
                participation_factor=gen.participation_factor,
            ))
            notify(gen, injection)

        for station in grid.vsc_converter_stations:
            k = self._node_key[station.node]
            if not station.connected or k not in bus_num:
                continue
            voltage_control = station.voltage_regulator_on and not math.isnan(station.target_v)
            injection = network.add_generator(Generator(
                id=station.id,
                bus_num=bus_num[k],
                target_p=0.0,
                max_p=0.0,
                target_q=mw_to_pu(station.target_q, s_base),
                target_v=station.target_v / network.buses[bus_num[k]].nominal_v,
                voltage_control=voltage_control,
                controlled_bus_num=bus_num[k],
                min_q=mw_to_pu(station.min_q, s_base),
                max_q=mw_to_pu(station.max_q, s_base),
                participating=False,
                converter=True,
            ))
            notify(station, injection)

        for load in grid.loads:
            k = self._node_key[load.node]
            if not load.connected or k not in bus_num:
                continue
            target_p = mw_to_pu(load.p0, s_base)
            injection = network.add_load(Load(
                id=load.id,
                bus_num=bus_num[k],
                target_p=target_p,
                initial_target_p=target_p,
                target_q=mw_to_pu(load.q0, s_base),
            ))
            notify(load, injection)

        for shunt in grid.shunts:
            k = self._node_key[shunt.node]
            if not shunt.connected or k not in bus_num:
                continue
            nominal_v = network.buses[bus_num[k]].nominal_v
            b_section = siemens_to_pu(shunt.b_per_section, nominal_v, s_base)
            g_section = siemens_to_pu(shunt.g_per_section, nominal_v, s_base)
            controlled = self._controlled_bus(shunt.id, k, shunt.regulating_node, bus_num)
            voltage_control = (
                shunt.voltage_regulator_on
                and self.parameters.shunt_compensator_voltage_control_on
                and not math.isnan(shunt.target_v)
            )
            injection = network.add_shunt(Shunt(
                id=shunt.id,
                bus_num=bus_num[k],
                g=g_section * shunt.section_count,
                b=b_section * shunt.section_count,
                section_b=[b_section * i for i in range(shunt.maximum_section_count + 1)],
                section_count=shunt.section_count,
                voltage_control=voltage_control,
                controlled_bus_num=controlled,
                target_v=shunt.target_v / network.buses[controlled].nominal_v,
                discrete_mode=DiscreteMode.CONTINUOUS if voltage_control else DiscreteMode.OFF,
            ))
            notify(shunt, injection)

    def _add_hvdcs(self, network: Network, bus_num: dict[int, int]) -> None:
        s_base = self.parameters.base_power
        for hvdc, (k1, k2) in zip(self.grid.hvdc_lines, self._hvdc_keys()):
            num1 = bus_num.get(k1) if k1 is not None else None
            num2 = bus_num.get(k2) if k2 is not None else None
            if num1 is None and num2 is None:
                continue
            station1 = self.grid.converter_station(hvdc.converter1)
            station2 = self.grid.converter_station(hvdc.converter2)
            setpoint = mw_to_pu(hvdc.active_setpoint, s_base)
            if hvdc.converters_mode == HvdcConvertersMode.SIDE_1_INVERTER_SIDE_2_RECTIFIER:
                setpoint = -setpoint
            emulation = hvdc.ac_emulation
            ac_emulation = (
                emulation is not None and emulation.enabled and num1 is not None and num2 is not None
            )
            network.add_hvdc(Hvdc(
                id=hvdc.id,
                bus1_num=num1,
                bus2_num=num2,
                converter1_id=station1.id,
                converter2_id=station2.id,
                active_setpoint=setpoint,
                max_p=mw_to_pu(hvdc.max_p, s_base),
                loss_factor1=station1.loss_factor / 100.0,
                loss_factor2=station2.loss_factor / 100.0,
                ac_emulation=ac_emulation,
                droop=emulation.droop * 180.0 / math.pi / s_base if ac_emulation else 0.0,
                p0=mw_to_pu(emulation.p0, s_base) if ac_emulation else 0.0,
            ))
            # LCC converters consume reactive power
            for station, num in ((station1, num1), (station2, num2)):
                if isinstance(station, LccConverterStation) and num is not None and 0 < station.power_factor < 1:
                    tan_phi = math.tan(math.acos(station.power_factor))
                    network.buses[num].fixed_q -= abs(setpoint) * tan_phi

    def _create_voltage_controls(self, network: Network) -> None:
        by_controlled: dict[tuple[VoltageControlType, int], VoltageControl] = {}

        def control(control_type: VoltageControlType, controlled: int, target_v: float) -> VoltageControl:
            vc = by_controlled.get((control_type, controlled))
            if vc is None:
                vc = network.add_voltage_control(VoltageControl(control_type, controlled, target_v))
                by_controlled[(control_type, controlled)] = vc
            elif abs(vc.target_v - target_v) > 1e-9:
                logger.warning(
                    "Controllers of bus '%s' have inconsistent voltage targets, keeping %.4f p.u.",
                    network.buses[controlled].id, vc.target_v,
                )
            return vc

        for gen in network.generators:
            if gen.voltage_control:
                vc = control(VoltageControlType.GENERATOR, gen.controlled_bus_num, gen.target_v)
                if gen.bus_num not in vc.controller_nums:
                    vc.controller_nums.append(gen.bus_num)
        for branch in network.branches:
            if branch.has_voltage_control:
                control(VoltageControlType.TRANSFORMER, branch.controlled_bus_num, branch.target_v) \
                    .controller_nums.append(branch.num)
        for shunt in network.shunts:
            if shunt.voltage_control:
                control(VoltageControlType.SHUNT, shunt.controlled_bus_num, shunt.target_v) \
                    .controller_nums.append(shunt.num)


def build_networks(
    grid: GridModel,
    parameters: LoadFlowParameters | None = None,
    post_processors: Iterable[NetworkPostProcessor] | None = None,
    retained_switch_ids: Iterable[str] = (),
) -> list[Network]:
    """Build one calculation network per synchronous component, main component first.

    Raises:
        StructuralError: malformed grid topology.
        ParameterError: unknown post-processor selected.
    """
    return NetworkBuilder(grid, parameters, post_processors, retained_switch_ids).build()
