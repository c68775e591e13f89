"""Voltage controls and their merging across zero-impedance groups.

A control links one or more controllers to one controlled bus:

- GENERATOR: controllers are bus nums of voltage-regulating generators
- TRANSFORMER: controllers are branch nums (ratio tap changers)
- SHUNT: controllers are shunt nums

Buses joined by zero-impedance branches share one voltage, so several
controls may end up targeting the same electrical node. Among controls of
the highest-priority type (GENERATOR > TRANSFORMER > SHUNT) the one with the
highest target voltage becomes MAIN, ties broken by controlled bus id; the
other ones of that type are DEPENDENT on it and lower-priority ones are
HIDDEN. A control whose controllers are all disabled is DISABLED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from gridsens.network.network_model import Network

logger = logging.getLogger(__name__)


class VoltageControlType(str, Enum):
    GENERATOR = "generator"
    TRANSFORMER = "transformer"
    SHUNT = "shunt"

    @property
    def priority(self) -> int:
        """Lower value wins."""
        return _PRIORITY[self]


_PRIORITY = {
    VoltageControlType.GENERATOR: 0,
    VoltageControlType.TRANSFORMER: 1,
    VoltageControlType.SHUNT: 2,
}


class MergeStatus(str, Enum):
    MAIN = "main"
    DEPENDENT = "dependent"
    HIDDEN = "hidden"
    DISABLED = "disabled"


@dataclass(eq=False)
class VoltageControl:
    control_type: VoltageControlType
    controlled_bus_num: int
    target_v: float  # p.u.
    controller_nums: list[int] = field(default_factory=list)
    num: int = -1
    merge_status: MergeStatus = MergeStatus.MAIN
    main_num: int | None = None
    # Controls merged into this one when MAIN
    dependent_nums: list[int] = field(default_factory=list)
    disabled_controller_nums: set[int] = field(default_factory=set)

    @property
    def operative_controller_nums(self) -> list[int]:
        return [n for n in self.controller_nums if n not in self.disabled_controller_nums]

    def disable_controllers(self, nums: Iterable[int]) -> None:
        """Mark controllers non-operative. All of them disabled disables the control."""
        self.disabled_controller_nums.update(n for n in nums if n in self.controller_nums)
        if not self.operative_controller_nums:
            self.merge_status = MergeStatus.DISABLED

    @property
    def is_active(self) -> bool:
        return self.merge_status == MergeStatus.MAIN


def _generator_controller_operative(network: Network, bus_num: int) -> bool:
    bus = network.buses[bus_num]
    if bus.disabled:
        return False
    return any(
        gen.voltage_control and not gen.disabled and not gen.q_limited
        for gen in (network.generators[n] for n in bus.generator_nums)
    )


def _controller_operative(network: Network, control: VoltageControl, num: int) -> bool:
    if control.control_type == VoltageControlType.GENERATOR:
        return _generator_controller_operative(network, num)
    if control.control_type == VoltageControlType.TRANSFORMER:
        branch = network.branches[num]
        return branch.has_voltage_control and network.is_branch_connected(branch)
    shunt = network.shunts[num]
    return shunt.voltage_control and not shunt.disabled and not network.buses[shunt.bus_num].disabled


def update_voltage_controls(network: Network) -> None:
    """Recompute operative controllers and merge statuses of every control."""
    controls = network.voltage_controls
    for control in controls:
        control.main_num = None
        control.dependent_nums = []
        control.disabled_controller_nums = {
            n for n in control.controller_nums if not _controller_operative(network, control, n)
        }
        controlled_bus = network.buses[control.controlled_bus_num]
        if controlled_bus.disabled or not control.operative_controller_nums:
            control.merge_status = MergeStatus.DISABLED
        else:
            control.merge_status = MergeStatus.MAIN

    by_group: dict[int, list[VoltageControl]] = {}
    rep = network.equation_bus_map()
    for control in controls:
        if control.merge_status == MergeStatus.MAIN:
            by_group.setdefault(int(rep[control.controlled_bus_num]), []).append(control)

    for group_controls in by_group.values():
        if len(group_controls) < 2:
            continue
        best_priority = min(c.control_type.priority for c in group_controls)
        same_type = [c for c in group_controls if c.control_type.priority == best_priority]
        main = min(
            same_type,
            key=lambda c: (-c.target_v, network.buses[c.controlled_bus_num].id),
        )
        for control in group_controls:
            if control is main:
                continue
            if control.control_type.priority == best_priority:
                control.merge_status = MergeStatus.DEPENDENT
                control.main_num = main.num
                main.dependent_nums.append(control.num)
                if abs(control.target_v - main.target_v) > 1e-9:
                    logger.warning(
                        "Voltage controls of buses '%s' and '%s' are merged with different "
                        "targets, keeping %.4f p.u.",
                        network.buses[main.controlled_bus_num].id,
                        network.buses[control.controlled_bus_num].id,
                        main.target_v,
                    )
            else:
                control.merge_status = MergeStatus.HIDDEN


def merged_controller_nums(network: Network, control: VoltageControl) -> list[int]:
    """Operative controllers of a MAIN control, including its dependents' ones."""
    nums = list(control.operative_controller_nums)
    for dep_num in control.dependent_nums:
        for n in network.voltage_controls[dep_num].operative_controller_nums:
            if n not in nums:
                nums.append(n)
    return nums
