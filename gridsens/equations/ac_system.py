"""AC equation system.

Unknowns: angle of every group except the reference, voltage magnitude of
every group, ``a1`` of continuously phase-controlled branches, ``r1`` of
continuously voltage-controlling transformers and ``b`` of continuously
voltage-controlling shunts.

Equations:

- active power balance of non-slack groups, plus one distribution equation
  per additional slack group;
- reactive power balance of groups that are not generator voltage
  controllers;
- one voltage target per MAIN control, and one reactive power distribution
  equation per additional controller group of a generator control;
- active power target of each phase-controlled branch;
- ``r1`` / ``b`` equality between controllers of a shared control.

The system is a snapshot of the network structure at construction time;
controls changing mode (reactive limits, rounded taps) require a new one.
"""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp

from gridsens.core.errors import EquationSystemError
from gridsens.equations.system import Equation, EquationSystem, EquationType, VariableType
from gridsens.equations.terms import BranchDerivatives, closed_branch_derivatives, closed_branch_flows
from gridsens.network.elements import Branch, DiscreteMode, PhaseControlMode
from gridsens.network.flows import bus_targets, hvdc_emulation_active
from gridsens.network.network_model import Network
from gridsens.network.voltage_control import MergeStatus, VoltageControl, VoltageControlType, merged_controller_nums

logger = logging.getLogger(__name__)


class AcEquationSystem(EquationSystem):
    def __init__(self, network: Network):
        super().__init__(network)
        G = self.n_groups
        self.p_offset = 0
        self.q_offset = G
        self.closed_branches: list[Branch] = [
            b for b in network.branches if network.is_branch_connected(b) and not b.zero_impedance
        ]

        generator_controls, controller_groups = self._generator_controls()
        v_groups = {self.bus_group(vc.controlled_bus_num) for vc, _ in generator_controls}
        transformer_controls = self._discrete_controls(VoltageControlType.TRANSFORMER, v_groups)
        v_groups |= {self.bus_group(vc.controlled_bus_num) for vc, _ in transformer_controls}
        shunt_controls = self._discrete_controls(VoltageControlType.SHUNT, v_groups)
        self.phase_branches: list[Branch] = [
            b for b in self.closed_branches if b.phase_control_mode == PhaseControlMode.CONTINUOUS
        ]

        # Variables
        for g in range(G):
            if g != self.reference_group:
                self.add_variable(VariableType.BUS_PHI, g)
        for g in range(G):
            self.add_variable(VariableType.BUS_V, g)
        for branch in self.phase_branches:
            self.add_variable(VariableType.BRANCH_A1, branch.num)
        for _, nums in transformer_controls:
            for n in nums:
                self.add_variable(VariableType.BRANCH_R1, n)
        for _, nums in shunt_controls:
            for n in nums:
                self.add_variable(VariableType.SHUNT_B, n)
        self.var_offset = 2 * G
        self.branch_p_offset = self.var_offset + len(self.variables)
        self.n_values = self.branch_p_offset + len(self.phase_branches)

        # Equations
        params = network.parameters
        self._add_active_power_equations(self.p_offset, params.slack_distribution_key)
        for g in range(G):
            if g not in controller_groups:
                self.add_equation(Equation(EquationType.BUS_Q, g, [(self.q_offset + g, 1.0)]))
        for vc, groups in generator_controls:
            self._add_voltage_equation(vc)
            for g in groups[1:]:
                self.add_equation(Equation(
                    EquationType.BUS_Q_DISTRIBUTION, g,
                    [(self.q_offset + g, 1.0), (self.q_offset + groups[0], -1.0)],
                ))
        for vc, nums in transformer_controls:
            self._add_voltage_equation(vc)
            self._add_equality_equations(EquationType.BRANCH_R1_DISTRIBUTION, VariableType.BRANCH_R1, nums)
        for vc, nums in shunt_controls:
            self._add_voltage_equation(vc)
            self._add_equality_equations(EquationType.SHUNT_B_DISTRIBUTION, VariableType.SHUNT_B, nums)
        for i, branch in enumerate(self.phase_branches):
            self.add_equation(Equation(
                EquationType.BRANCH_P, branch.num, [(self.branch_p_offset + i, 1.0)],
                target=branch.phase_control_target_p,
            ))

        if len(self.equations) != len(self.variables):
            raise EquationSystemError(
                f"Network '{network.id}' has {len(self.equations)} equations "
                f"for {len(self.variables)} variables"
            )
        self.combination = self.combination_matrix(self.n_values)
        logger.debug(
            "AC system of network '%s': %d groups, %d variables", network.id, G, len(self.variables)
        )

    # ------------------------------------------------------------------
    # Control selection
    # ------------------------------------------------------------------

    def _generator_controls(self) -> tuple[list[tuple[VoltageControl, list[int]]], set[int]]:
        network = self.network
        controls = []
        used: set[int] = set()
        for vc in network.voltage_controls:
            if vc.control_type != VoltageControlType.GENERATOR or vc.merge_status != MergeStatus.MAIN:
                continue
            groups: list[int] = []
            for bus_num in merged_controller_nums(network, vc):
                g = int(self.group_of[bus_num])
                if g < 0 or g in groups:
                    continue
                if g in used:
                    logger.warning(
                        "Bus '%s' already controls another bus voltage, ignored as controller of '%s'",
                        network.buses[bus_num].id, network.buses[vc.controlled_bus_num].id,
                    )
                    continue
                groups.append(g)
            if groups:
                used.update(groups)
                controls.append((vc, sorted(groups)))
        return controls, used

    def _discrete_controls(
        self, control_type: VoltageControlType, v_groups: set[int]
    ) -> list[tuple[VoltageControl, list[int]]]:
        network = self.network
        controls = []
        for vc in network.voltage_controls:
            if vc.control_type != control_type or vc.merge_status != MergeStatus.MAIN:
                continue
            if control_type == VoltageControlType.TRANSFORMER:
                nums = [
                    n for n in merged_controller_nums(network, vc)
                    if network.branches[n] in self.closed_branches
                    and network.branches[n].voltage_control_mode == DiscreteMode.CONTINUOUS
                ]
            else:
                nums = [
                    n for n in merged_controller_nums(network, vc)
                    if network.shunts[n].discrete_mode == DiscreteMode.CONTINUOUS
                ]
            if not nums:
                continue
            g = self.bus_group(vc.controlled_bus_num)
            if g in v_groups:
                continue
            v_groups.add(g)
            controls.append((vc, sorted(nums)))
        return controls

    def _add_voltage_equation(self, vc: VoltageControl) -> None:
        g = self.bus_group(vc.controlled_bus_num)
        col = self.column(VariableType.BUS_V, g)
        self.add_equation(Equation(EquationType.BUS_V, g, [(self.var_offset + col, 1.0)], target=vc.target_v))

    def _add_equality_equations(self, eq_type: EquationType, var_type: VariableType, nums: list[int]) -> None:
        first = self.var_offset + self.column(var_type, nums[0])
        for n in nums[1:]:
            self.add_equation(Equation(
                eq_type, n, [(self.var_offset + self.column(var_type, n), 1.0), (first, -1.0)]
            ))

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state_vector(self) -> np.ndarray:
        """Current values of the unknowns, read from the network."""
        network = self.network
        x = np.zeros(len(self.variables))
        for col, var in enumerate(self.variables):
            if var.type == VariableType.BUS_PHI:
                x[col] = network.buses[self.group_buses[var.num]].angle
            elif var.type == VariableType.BUS_V:
                x[col] = network.buses[self.group_buses[var.num]].v
            elif var.type == VariableType.BRANCH_A1:
                x[col] = network.branches[var.num].pi_model.a1
            elif var.type == VariableType.BRANCH_R1:
                x[col] = network.branches[var.num].pi_model.r1
            else:
                x[col] = network.shunts[var.num].b
        return x

    def update_network(self, x: np.ndarray) -> None:
        """Write the unknowns back into the network elements."""
        network = self.network
        for col, var in enumerate(self.variables):
            value = float(x[col])
            if var.type == VariableType.BUS_PHI:
                for bus_num in self.members[var.num]:
                    network.buses[bus_num].angle = value
            elif var.type == VariableType.BUS_V:
                for bus_num in self.members[var.num]:
                    network.buses[bus_num].v = value
            elif var.type == VariableType.BRANCH_A1:
                network.branches[var.num].pi_model.set_a1(value)
            elif var.type == VariableType.BRANCH_R1:
                network.branches[var.num].pi_model.set_r1(value)
            else:
                network.shunts[var.num].b = value
        reference_angle = network.buses[self.group_buses[self.reference_group]].angle
        for bus_num in self.members[self.reference_group]:
            network.buses[bus_num].angle = reference_angle

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _group_state(self) -> tuple[np.ndarray, np.ndarray]:
        buses = self.network.buses
        v = np.array([buses[b].v for b in self.group_buses])
        ph = np.array([buses[b].angle for b in self.group_buses])
        return v, ph

    def _branch_columns(self, branches: list[Branch]) -> tuple[np.ndarray, ...]:
        g1 = self.group_of[[b.bus1_num for b in branches]]
        g2 = self.group_of[[b.bus2_num for b in branches]]
        phi_col = self.group_columns(VariableType.BUS_PHI)
        v_col = self.group_columns(VariableType.BUS_V)
        a1_col = np.array([self._columns.get((VariableType.BRANCH_A1, b.num), -1) for b in branches], dtype=int)
        r1_col = np.array([self._columns.get((VariableType.BRANCH_R1, b.num), -1) for b in branches], dtype=int)
        return g1, g2, v_col[g1], v_col[g2], phi_col[g1], phi_col[g2], a1_col, r1_col

    def _branch_terms(self, branches: list[Branch], v: np.ndarray, ph: np.ndarray, derivatives: bool):
        g1 = self.group_of[[b.bus1_num for b in branches]]
        g2 = self.group_of[[b.bus2_num for b in branches]]
        pis = [b.pi_model for b in branches]
        args = (
            v[g1], ph[g1], v[g2], ph[g2],
            np.array([pi.r1 for pi in pis]), np.array([pi.a1 for pi in pis]),
            np.array([pi.y for pi in pis]), np.array([pi.ksi for pi in pis]),
            np.array([pi.g1 for pi in pis]), np.array([pi.b1 for pi in pis]),
            np.array([pi.g2 for pi in pis]), np.array([pi.b2 for pi in pis]),
        )
        flows = closed_branch_flows(*args)
        return flows, (closed_branch_derivatives(*args) if derivatives else None)

    @staticmethod
    def _scatter(rows, cols, data, row: np.ndarray, deriv: BranchDerivatives, columns) -> None:
        cv1, cv2, cph1, cph2, ca1, cr1 = columns
        for col, values in (
            (cv1, deriv.dv1), (cv2, deriv.dv2), (cph1, deriv.dph1),
            (cph2, deriv.dph2), (ca1, deriv.da1), (cr1, deriv.dr1),
        ):
            mask = col >= 0
            rows.append(row[mask])
            cols.append(col[mask])
            data.append(np.broadcast_to(values, row.shape)[mask])

    def evaluate(self, derivatives: bool = False) -> tuple[np.ndarray, sp.csr_matrix | None]:
        """Values vector and, optionally, its derivatives with respect to the unknowns."""
        network = self.network
        G = self.n_groups
        nv = len(self.variables)
        v, ph = self._group_state()
        p = np.zeros(G)
        q = np.zeros(G)
        rows: list[np.ndarray] = []
        cols: list[np.ndarray] = []
        data: list[np.ndarray] = []

        if self.closed_branches:
            (p1, q1, p2, q2), d = self._branch_terms(self.closed_branches, v, ph, derivatives)
            g1, g2, *columns = self._branch_columns(self.closed_branches)
            np.add.at(p, g1, p1)
            np.add.at(p, g2, p2)
            np.add.at(q, g1, q1)
            np.add.at(q, g2, q2)
            if derivatives:
                dp1, dq1, dp2, dq2 = d
                self._scatter(rows, cols, data, self.p_offset + g1, dp1, columns)
                self._scatter(rows, cols, data, self.q_offset + g1, dq1, columns)
                self._scatter(rows, cols, data, self.p_offset + g2, dp2, columns)
                self._scatter(rows, cols, data, self.q_offset + g2, dq2, columns)

        v_col = self.group_columns(VariableType.BUS_V)
        phi_col = self.group_columns(VariableType.BUS_PHI)

        def entry(row: int, col: int | None, value: float) -> None:
            if col is not None and col >= 0:
                rows.append(np.array([row]))
                cols.append(np.array([col]))
                data.append(np.array([value]))

        for shunt in network.shunts:
            g = int(self.group_of[shunt.bus_num])
            if shunt.disabled or g < 0:
                continue
            v2 = v[g] * v[g]
            p[g] += shunt.g * v2
            q[g] -= shunt.b * v2
            if derivatives:
                entry(self.p_offset + g, v_col[g], 2 * shunt.g * v[g])
                entry(self.q_offset + g, v_col[g], -2 * shunt.b * v[g])
                entry(self.q_offset + g, self.find_column(VariableType.SHUNT_B, shunt.num), -v2)

        for hvdc in network.hvdcs:
            if not hvdc_emulation_active(network, hvdc.num):
                continue
            g1, g2 = int(self.group_of[hvdc.bus1_num]), int(self.group_of[hvdc.bus2_num])
            raw = hvdc.p0 + hvdc.droop * (ph[g1] - ph[g2])
            flow = float(np.clip(raw, -hvdc.max_p, hvdc.max_p))
            p[g1] += flow
            p[g2] -= flow
            if derivatives and abs(raw) < hvdc.max_p:
                entry(self.p_offset + g1, phi_col[g1], hvdc.droop)
                entry(self.p_offset + g1, phi_col[g2], -hvdc.droop)
                entry(self.p_offset + g2, phi_col[g1], -hvdc.droop)
                entry(self.p_offset + g2, phi_col[g2], hvdc.droop)

        target_p, target_q = bus_targets(network, dc=False)
        for g, members in enumerate(self.members):
            p[g] -= target_p[members].sum()
            q[g] -= target_q[members].sum()

        branch_p = np.zeros(len(self.phase_branches))
        if self.phase_branches:
            (p1, _, _, _), d = self._branch_terms(self.phase_branches, v, ph, derivatives)
            branch_p[:] = p1
            if derivatives:
                _, _, *columns = self._branch_columns(self.phase_branches)
                row = self.branch_p_offset + np.arange(len(self.phase_branches))
                self._scatter(rows, cols, data, row, d[0], columns)

        x = self.state_vector()
        values = np.concatenate([p, q, x, branch_p])
        if not derivatives:
            return values, None
        rows.append(self.var_offset + np.arange(nv))
        cols.append(np.arange(nv))
        data.append(np.ones(nv))
        dvalues = sp.coo_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
            shape=(self.n_values, nv),
        ).tocsr()
        return values, dvalues

    def mismatch(self) -> np.ndarray:
        values, _ = self.evaluate(derivatives=False)
        return self.combination @ values - self.targets

    def jacobian(self) -> sp.csc_matrix:
        _, dvalues = self.evaluate(derivatives=True)
        return (self.combination @ dvalues).tocsc()

    # ------------------------------------------------------------------
    # Sensitivity helpers
    # ------------------------------------------------------------------

    def branch_flow_terms(self, branch: Branch) -> tuple[tuple[float, ...], tuple[BranchDerivatives, ...]]:
        """(p1, q1, p2, q2) of one closed branch and their derivatives."""
        v, ph = self._group_state()
        flows, derivs = self._branch_terms([branch], v, ph, derivatives=True)
        return tuple(float(f[0]) for f in flows), derivs

    def gradient(self, branch: Branch, deriv: BranchDerivatives) -> np.ndarray:
        """Dense derivative row of a branch function with respect to the unknowns."""
        grad = np.zeros(len(self.variables))
        _, _, *columns = self._branch_columns([branch])
        for col, values in zip(columns, (deriv.dv1, deriv.dv2, deriv.dph1, deriv.dph2, deriv.da1, deriv.dr1)):
            if col[0] >= 0:
                grad[col[0]] += float(np.asarray(values).ravel()[0])
        return grad

    def a1_value_derivative(self, branch: Branch) -> np.ndarray:
        """Derivative of the values vector with respect to the ``a1`` of ``branch``."""
        dvalues = np.zeros(self.n_values)
        if branch not in self.closed_branches:
            return dvalues
        _, (dp1, dq1, dp2, dq2) = self.branch_flow_terms(branch)
        g1 = self.bus_group(branch.bus1_num)
        g2 = self.bus_group(branch.bus2_num)
        da1 = [float(np.asarray(d.da1).ravel()[0]) for d in (dp1, dq1, dp2, dq2)]
        dvalues[self.p_offset + g1] += da1[0]
        dvalues[self.q_offset + g1] += da1[1]
        dvalues[self.p_offset + g2] += da1[2]
        dvalues[self.q_offset + g2] += da1[3]
        if branch in self.phase_branches:
            dvalues[self.branch_p_offset + self.phase_branches.index(branch)] += da1[0]
        return dvalues

