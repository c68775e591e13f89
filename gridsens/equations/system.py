"""Variable and equation indexing shared by the AC and DC systems.

Buses merged by zero-impedance branches form one *group* sharing a single
voltage magnitude and angle. Every equation is a linear combination of
*values*::

    [ P mismatch per group | Q mismatch per group | variables | controlled branch P ]

(the DC system only uses the first block), so the mismatch vector and the
Jacobian both come from one sparse combination matrix ``C``::

    f = C · values - targets
    J = C · d(values)/dx

Mismatches are ``calculated - target``, the Newton step solves ``J·dx = -f``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import scipy.sparse as sp

from gridsens.core.errors import EquationSystemError
from gridsens.network.network_model import Network
from gridsens.parameters import SlackDistributionKey

logger = logging.getLogger(__name__)


class VariableType(str, Enum):
    BUS_PHI = "bus_phi"
    BUS_V = "bus_v"
    BRANCH_A1 = "branch_a1"
    BRANCH_R1 = "branch_r1"
    SHUNT_B = "shunt_b"


class EquationType(str, Enum):
    BUS_P = "bus_p"
    BUS_Q = "bus_q"
    BUS_V = "bus_v"
    BUS_Q_DISTRIBUTION = "bus_q_distribution"
    SLACK_P_DISTRIBUTION = "slack_p_distribution"
    BRANCH_P = "branch_p"
    BRANCH_R1_DISTRIBUTION = "branch_r1_distribution"
    SHUNT_B_DISTRIBUTION = "shunt_b_distribution"


@dataclass(frozen=True)
class Variable:
    type: VariableType
    num: int  # group index for bus variables, element num otherwise


@dataclass
class Equation:
    type: EquationType
    num: int
    terms: list[tuple[int, float]] = field(default_factory=list)  # (value index, coefficient)
    target: float = 0.0


class EquationSystem:
    """Group, variable and equation bookkeeping for one network."""

    def __init__(self, network: Network):
        self.network = network
        rep = network.equation_bus_map()
        self.group_buses: list[int] = sorted({int(r) for r in rep if r >= 0})
        index = {bus_num: g for g, bus_num in enumerate(self.group_buses)}
        self.group_of = np.array([index.get(int(r), -1) for r in rep], dtype=int)
        self.members: list[list[int]] = [[] for _ in self.group_buses]
        for bus_num, g in enumerate(self.group_of):
            if g >= 0:
                self.members[g].append(bus_num)

        reference = network.reference_bus
        if reference is None:
            raise EquationSystemError(f"Network '{network.id}' has no reference bus")
        self.reference_group = int(self.group_of[reference.num])
        self.slack_groups: list[int] = [self.reference_group]
        for bus in network.slack_buses:
            g = int(self.group_of[bus.num])
            if g not in self.slack_groups:
                self.slack_groups.append(g)

        self.variables: list[Variable] = []
        self._columns: dict[tuple[VariableType, int], int] = {}
        self.equations: list[Equation] = []
        self._rows: dict[tuple[EquationType, int], int] = {}

    @property
    def n_groups(self) -> int:
        return len(self.group_buses)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def bus_group(self, bus_num: int) -> int:
        g = int(self.group_of[bus_num])
        if g < 0:
            raise EquationSystemError(
                f"Bus '{self.network.buses[bus_num].id}' is disabled and has no equation"
            )
        return g

    def add_variable(self, var_type: VariableType, num: int) -> int:
        col = len(self.variables)
        self.variables.append(Variable(var_type, num))
        self._columns[(var_type, num)] = col
        return col

    def find_column(self, var_type: VariableType, num: int) -> int | None:
        return self._columns.get((var_type, num))

    def column(self, var_type: VariableType, num: int) -> int:
        col = self._columns.get((var_type, num))
        if col is None:
            raise EquationSystemError(f"No {var_type.value} variable for element {num}")
        return col

    def add_equation(self, equation: Equation) -> int:
        row = len(self.equations)
        self.equations.append(equation)
        self._rows[(equation.type, equation.num)] = row
        return row

    def find_row(self, eq_type: EquationType, num: int) -> int | None:
        return self._rows.get((eq_type, num))

    def row(self, eq_type: EquationType, num: int) -> int:
        row = self._rows.get((eq_type, num))
        if row is None:
            raise EquationSystemError(f"No {eq_type.value} equation for element {num}")
        return row

    def group_columns(self, var_type: VariableType) -> np.ndarray:
        """Column of ``var_type`` for each group, -1 when the group has none."""
        return np.array(
            [self._columns.get((var_type, g), -1) for g in range(self.n_groups)], dtype=int
        )

    # ------------------------------------------------------------------
    # Slack
    # ------------------------------------------------------------------

    def slack_weights(self, key: SlackDistributionKey) -> np.ndarray:
        """Share of the slack mismatch taken by each slack group."""
        network = self.network
        weights = np.ones(len(self.slack_groups))
        if key == SlackDistributionKey.EQUAL or len(self.slack_groups) == 1:
            return weights / weights.sum()
        for k, g in enumerate(self.slack_groups):
            if key == SlackDistributionKey.MAX_GENERATION:
                weights[k] = sum(
                    gen.max_p
                    for b in self.members[g]
                    for gen in (network.generators[n] for n in network.buses[b].generator_nums)
                    if not gen.disabled and not gen.converter
                )
            else:
                weights[k] = sum(network.bus_load_target_p(b) for b in self.members[g])
        if np.any(weights <= 0):
            logger.warning(
                "Slack distribution key %s gives a non-positive weight in network '%s', "
                "splitting equally", key.value, network.id,
            )
            weights = np.ones(len(self.slack_groups))
        return weights / weights.sum()

    def _add_active_power_equations(self, p_offset: int, key: SlackDistributionKey) -> None:
        for g in range(self.n_groups):
            if g not in self.slack_groups:
                self.add_equation(Equation(EquationType.BUS_P, g, [(p_offset + g, 1.0)]))
        weights = self.slack_weights(key)
        g0 = self.slack_groups[0]
        for k, g in enumerate(self.slack_groups[1:], start=1):
            self.add_equation(Equation(
                EquationType.SLACK_P_DISTRIBUTION, g,
                [(p_offset + g, 1.0), (p_offset + g0, -weights[k] / weights[0])],
            ))

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def combination_matrix(self, n_values: int) -> sp.csr_matrix:
        rows, cols, data = [], [], []
        for i, eq in enumerate(self.equations):
            for value_index, coefficient in eq.terms:
                rows.append(i)
                cols.append(value_index)
                data.append(coefficient)
        return sp.csr_matrix((data, (rows, cols)), shape=(len(self.equations), n_values))

    @property
    def targets(self) -> np.ndarray:
        return np.array([eq.target for eq in self.equations])

    def bus_angles(self, phi: np.ndarray) -> np.ndarray:
        """Angle of every bus from the angle of every group (NaN for disabled buses)."""
        angles = np.full(len(self.group_of), np.nan)
        enabled = self.group_of >= 0
        angles[enabled] = phi[self.group_of[enabled]]
        return angles
