"""DC post-contingency states solved against the pre-contingency factorization.

The network is first put in the post-contingency topology (contingency and
remedial actions applied, islands disabled by the connectivity analysis).
The state is then solved one of two ways:

1. Fast path: the pre-contingency matrix is kept and the opened or closed
   branches are compensated with a low-rank Woodbury update. Branches that
   would split the matrix (``elements_to_reconnect``) stay in it; the
   islands they hang on carry no injection, hence no flow.
2. Slow path: a new DC equation system is built and factorized. Used when
   zero-impedance topology, HVDC emulation, branch susceptances (tap
   actions) or slack buses change, since those alter the equation structure.

The pre-contingency state goes through the same path with no change, so a
state reconnecting what it opened gives bit-identical results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from gridsens.contingency.connectivity import ConnectivityAnalysis, ConnectivityResult
from gridsens.equations.dc_system import DcEquationSystem
from gridsens.network.elements import Branch
from gridsens.network.flows import branch_dc_susceptance, hvdc_emulation_active
from gridsens.network.network_model import Network
from gridsens.network.slack import distribute_active_power, participation_vector
from gridsens.network.state import NetworkState
from gridsens.solver.dc_engine import active_power_imbalance
from gridsens.solver.linear import LinearSolver, MatrixFactorization, SparseLuSolver
from gridsens.solver.woodbury import WoodburyCompensation, branch_compensation

logger = logging.getLogger(__name__)


def topology_closed(branch: Branch) -> bool:
    """Closed on both sides, whatever the state of its buses."""
    return (
        not branch.disabled and branch.connected1 and branch.connected2
        and branch.bus1_num is not None and branch.bus2_num is not None
    )


@dataclass
class DcState:
    connectivity: ConnectivityResult
    system: DcEquationSystem
    factorization: MatrixFactorization
    compensation: WoodburyCompensation | None = None
    # Branches of the matrix, None when the system was rebuilt for this state
    matrix_branches: list[Branch] | None = None
    removed_branch_nums: frozenset[int] = frozenset()
    participation: dict[int, float] = field(default_factory=dict)
    distributed: float = 0.0

    @property
    def rebuilt(self) -> bool:
        return self.matrix_branches is None

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        """Solve the post-contingency system for one or several right-hand sides."""
        x = self.factorization.solve(rhs)
        return x if self.compensation is None else self.compensation.compensate(x)

    def rhs(self) -> np.ndarray:
        system = self.system
        return system.combination @ (
            system.group_targets() - system.constant_injections(self.matrix_branches)
        )

    def solve_angles(self) -> np.ndarray:
        """Solve the state and write the angles into the network."""
        x = self.solve(self.rhs())
        self.system.update_network(x)
        return x


class DcStateSolver:
    """Prepares DC states of one network.

    Built on the pre-contingency network; every ``prepare`` call expects
    the network restored to ``base_state`` and then modified by the
    contingency and its actions.
    """

    def __init__(self, network: Network, linear_solver: LinearSolver | None = None):
        self.network = network
        self.linear_solver = linear_solver or SparseLuSolver()
        self.base_state = NetworkState.save(network)
        self.system = DcEquationSystem(network)
        self.factorization = self.linear_solver.factorize(self.system.matrix())
        self.connectivity = ConnectivityAnalysis(network)
        self._base_closed = frozenset(b.num for b in self.system.closed_branches)
        self._base_zero_impedance = self._zero_impedance_closed()
        self._base_emulated = self._emulated_hvdcs()
        self._base_slack = self._slack_nums()

    def _zero_impedance_closed(self) -> frozenset[int]:
        return frozenset(b.num for b in self.network.branches if b.zero_impedance and topology_closed(b))

    def _emulated_hvdcs(self) -> frozenset[int]:
        return frozenset(h.num for h in self.network.hvdcs if hvdc_emulation_active(self.network, h.num))

    def _slack_nums(self) -> tuple[int, ...]:
        reference = self.network.reference_bus
        return (reference.num if reference else -1, *sorted(b.num for b in self.network.slack_buses))

    def restore(self) -> None:
        self.base_state.restore(self.network)

    def _needs_rebuild(self, added: list[Branch]) -> str | None:
        network = self.network
        if self._zero_impedance_closed() != self._base_zero_impedance:
            return "zero impedance topology changed"
        if self._emulated_hvdcs() != self._base_emulated:
            return "HVDC emulation changed"
        if self._slack_nums() != self._base_slack:
            return "slack buses changed"
        for branch in self.system.closed_branches:
            if topology_closed(branch) and branch.pi_model.has_taps:
                if branch_dc_susceptance(network, branch) != self.system.susceptances[branch.num]:
                    return f"susceptance of branch '{branch.id}' changed"
        for branch in added:
            if self.system.group_of[branch.bus1_num] < 0 or self.system.group_of[branch.bus2_num] < 0:
                return f"branch '{branch.id}' joins a bus outside the matrix"
        return None

    def prepare(self, tripped_bus_nums: frozenset[int] = frozenset()) -> DcState | None:
        """Analyse connectivity, distribute the slack and set up the solve of the current state.

        Returns None when the reference bus is lost and the slack loss
        behaviour keeps the pre-contingency results.

        Raises:
            SingularMatrixError: the rebuilt system cannot be factorized.
        """
        network = self.network
        params = network.parameters
        connectivity = self.connectivity.analyze(tripped_bus_nums)
        if not self.connectivity.apply(connectivity):
            return None
        main = set(connectivity.main_bus_nums)

        participation: dict[int, float] = {}
        distributed = 0.0
        if params.distributed_slack:
            participation = participation_vector(network, params.balance_type, params.countries_to_balance, main)
            imbalance = active_power_imbalance(network)
            if abs(imbalance) * network.base_power >= params.slack_bus_p_max_mismatch:
                distributed = distribute_active_power(
                    network, imbalance, params.balance_type, params.countries_to_balance, main
                ).distributed

        removed = frozenset(n for n in self._base_closed if not topology_closed(network.branches[n]))
        added = [
            b for b in network.branches
            if b.num not in self._base_closed and not b.zero_impedance and topology_closed(b)
        ]
        reason = self._needs_rebuild(added)
        if reason is not None:
            logger.debug("DC system of network '%s' rebuilt: %s", network.id, reason)
            system = DcEquationSystem(network)
            return DcState(
                connectivity, system, self.linear_solver.factorize(system.matrix()),
                removed_branch_nums=removed, participation=participation, distributed=distributed,
            )

        kept = set(connectivity.elements_to_reconnect)
        opened = [network.branches[n] for n in sorted(removed - kept)]
        compensation = branch_compensation(self.system, self.factorization, opened, added)
        matrix_branches = [b for b in self.system.closed_branches if b.num not in removed or b.num in kept]
        return DcState(
            connectivity, self.system, self.factorization, compensation,
            matrix_branches=matrix_branches + added,
            removed_branch_nums=removed, participation=participation, distributed=distributed,
        )
