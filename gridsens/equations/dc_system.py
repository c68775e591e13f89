"""DC equation system.

Lossless linearized model: unknowns are the group angles (reference
excluded), flows are ``p1 = b·(ph1 - ph2 + a1)`` and AC-emulated HVDC lines
carry ``p0 + droop·(ph1 - ph2)``. The matrix is constant for a given
topology; right-hand sides depend on injections and phase shifts only.
"""

from __future__ import annotations

import logging
from typing import Iterable

import numpy as np
import scipy.sparse as sp

from gridsens.equations.system import EquationSystem, VariableType
from gridsens.network.elements import Branch
from gridsens.network.flows import branch_dc_susceptance, bus_targets, hvdc_emulation_active
from gridsens.network.network_model import Network

logger = logging.getLogger(__name__)


class DcEquationSystem(EquationSystem):
    def __init__(self, network: Network):
        super().__init__(network)
        self.closed_branches: list[Branch] = [
            b for b in network.branches if network.is_branch_connected(b) and not b.zero_impedance
        ]
        self.susceptances = {b.num: branch_dc_susceptance(network, b) for b in self.closed_branches}
        for g in range(self.n_groups):
            if g != self.reference_group:
                self.add_variable(VariableType.BUS_PHI, g)
        self._add_active_power_equations(0, network.parameters.slack_distribution_key)
        self.phi_col = self.group_columns(VariableType.BUS_PHI)
        self.combination = self.combination_matrix(self.n_groups)

    # ------------------------------------------------------------------
    # Matrix
    # ------------------------------------------------------------------

    def injection_vector(self, g1: int, g2: int) -> np.ndarray:
        """Incidence of a unit flow from group ``g1`` to group ``g2`` (values space)."""
        u = np.zeros(self.n_groups)
        u[g1] += 1.0
        u[g2] -= 1.0
        return u

    def angle_difference_row(self, g1: int, g2: int) -> np.ndarray:
        """Row ``r`` such that ``r·x = ph(g1) - ph(g2)``."""
        row = np.zeros(len(self.variables))
        if self.phi_col[g1] >= 0:
            row[self.phi_col[g1]] += 1.0
        if self.phi_col[g2] >= 0:
            row[self.phi_col[g2]] -= 1.0
        return row

    def matrix(self) -> sp.csc_matrix:
        rows, cols, data = [], [], []

        def couple(g1: int, g2: int, b: float) -> None:
            # dP(g1)/dph(g1) = b, dP(g1)/dph(g2) = -b, and opposite for g2
            for row, sign in ((g1, 1.0), (g2, -1.0)):
                for g, col_sign in ((g1, 1.0), (g2, -1.0)):
                    col = self.phi_col[g]
                    if col >= 0:
                        rows.append(row)
                        cols.append(col)
                        data.append(sign * col_sign * b)

        for branch in self.closed_branches:
            couple(
                int(self.group_of[branch.bus1_num]), int(self.group_of[branch.bus2_num]),
                self.susceptances[branch.num],
            )
        for hvdc in self.network.hvdcs:
            if hvdc_emulation_active(self.network, hvdc.num):
                couple(int(self.group_of[hvdc.bus1_num]), int(self.group_of[hvdc.bus2_num]), hvdc.droop)

        dp = sp.coo_matrix((data, (rows, cols)), shape=(self.n_groups, len(self.variables))).tocsr()
        return (self.combination @ dp).tocsc()

    # ------------------------------------------------------------------
    # Right-hand side
    # ------------------------------------------------------------------

    def susceptance(self, branch: Branch) -> float:
        b = self.susceptances.get(branch.num)
        return branch_dc_susceptance(self.network, branch) if b is None else b

    def constant_injections(self, branches: Iterable[Branch] | None = None) -> np.ndarray:
        """Active power leaving each group independently of the angles (phase shifts, HVDC p0).

        ``branches`` are the branches present in the matrix, ``closed_branches`` by default.
        """
        p = np.zeros(self.n_groups)
        for branch in self.closed_branches if branches is None else branches:
            a1 = branch.pi_model.a1
            if a1 != 0.0:
                flow = self.susceptance(branch) * a1
                p[self.group_of[branch.bus1_num]] += flow
                p[self.group_of[branch.bus2_num]] -= flow
        for hvdc in self.network.hvdcs:
            if hvdc_emulation_active(self.network, hvdc.num):
                p[self.group_of[hvdc.bus1_num]] += hvdc.p0
                p[self.group_of[hvdc.bus2_num]] -= hvdc.p0
        return p

    def group_targets(self) -> np.ndarray:
        target_p, _ = bus_targets(self.network, dc=True)
        return np.array([target_p[members].sum() for members in self.members])

    def rhs(self, group_injections: np.ndarray | None = None) -> np.ndarray:
        """Right-hand side for the given net group injections (current targets by default)."""
        if group_injections is None:
            group_injections = self.group_targets()
        return self.combination @ (group_injections - self.constant_injections())

    def group_angles(self, x: np.ndarray) -> np.ndarray:
        phi = np.zeros(self.n_groups)
        mask = self.phi_col >= 0
        phi[mask] = x[self.phi_col[mask]]
        return phi

    def update_network(self, x: np.ndarray) -> None:
        """Write angles into the network, voltages set to 1 p.u."""
        angles = self.bus_angles(self.group_angles(x))
        for bus in self.network.buses:
            if not bus.disabled:
                bus.angle = float(angles[bus.num])
                bus.v = 1.0
        logger.debug("DC angles written to network '%s'", self.network.id)
