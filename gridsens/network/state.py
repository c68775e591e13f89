"""Save and restore the mutable state of a network.

Contingency and sensitivity analyses modify a network in place (disabled
elements, moved taps, distributed generation) and go back to the
pre-contingency state before the next contingency.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field

from gridsens.network.network_model import Network
from gridsens.network.voltage_control import update_voltage_controls


@dataclass
class NetworkState:
    bus_values: list[tuple[float, float, bool, bool, bool]] = field(default_factory=list)
    generator_values: list[tuple[float, float, bool, bool, bool]] = field(default_factory=list)
    load_values: list[tuple[float, float, bool]] = field(default_factory=list)
    shunt_values: list[tuple] = field(default_factory=list)
    branch_values: list[tuple] = field(default_factory=list)
    hvdc_values: list[tuple[bool, bool]] = field(default_factory=list)

    @classmethod
    def save(cls, network: Network) -> NetworkState:
        return cls(
            bus_values=[(b.v, b.angle, b.disabled, b.slack, b.reference) for b in network.buses],
            generator_values=[
                (g.target_p, g.target_q, g.voltage_control, g.q_limited, g.disabled)
                for g in network.generators
            ],
            load_values=[(ld.target_p, ld.target_q, ld.disabled) for ld in network.loads],
            shunt_values=[
                (s.g, s.b, s.section_count, s.voltage_control, s.discrete_mode, s.disabled)
                for s in network.shunts
            ],
            branch_values=[
                (
                    br.disabled, br.connected1, br.connected2, copy.copy(br.pi_model),
                    br.phase_control_mode, br.voltage_control_mode,
                )
                for br in network.branches
            ],
            hvdc_values=[(h.disabled, h.ac_emulation) for h in network.hvdcs],
        )

    def restore(self, network: Network) -> None:
        for bus, (v, angle, disabled, slack, reference) in zip(network.buses, self.bus_values):
            bus.v, bus.angle, bus.disabled, bus.slack, bus.reference = v, angle, disabled, slack, reference
        for gen, values in zip(network.generators, self.generator_values):
            gen.target_p, gen.target_q, gen.voltage_control, gen.q_limited, gen.disabled = values
        for load, values in zip(network.loads, self.load_values):
            load.target_p, load.target_q, load.disabled = values
        for shunt, values in zip(network.shunts, self.shunt_values):
            (
                shunt.g, shunt.b, shunt.section_count, shunt.voltage_control, shunt.discrete_mode, shunt.disabled,
            ) = values
        for branch, values in zip(network.branches, self.branch_values):
            (
                branch.disabled, branch.connected1, branch.connected2, pi,
                branch.phase_control_mode, branch.voltage_control_mode,
            ) = values
            branch.pi_model = copy.copy(pi)
        for hvdc, (disabled, ac_emulation) in zip(network.hvdcs, self.hvdc_values):
            hvdc.disabled, hvdc.ac_emulation = disabled, ac_emulation
        update_voltage_controls(network)

    def restore_voltages(self, network: Network) -> None:
        """Restore only bus voltages and angles (warm start of a new solve)."""
        for bus, (v, angle, *_) in zip(network.buses, self.bus_values):
            bus.v, bus.angle = v, angle
