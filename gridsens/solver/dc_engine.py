"""DC load flow.

Lossless linear model solved in one shot: the active power imbalance is
first spread over participating elements (distributed slack), then the
angle system ``A·ph = rhs`` is factorized and solved. The factorization is
kept so that contingency and sensitivity analyses can reuse it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from gridsens.core.errors import SingularMatrixError
from gridsens.equations.dc_system import DcEquationSystem
from gridsens.network.flows import bus_targets
from gridsens.network.network_model import Network
from gridsens.network.slack import distribute_active_power
from gridsens.solver.linear import LinearSolver, MatrixFactorization, SparseLuSolver
from gridsens.solver.results import SolverStatus

logger = logging.getLogger(__name__)


@dataclass
class DcLoadFlowResult:
    status: SolverStatus
    slack_bus_active_power_mismatch: float = 0.0  # p.u.
    distributed_active_power: float = 0.0  # p.u.


def active_power_imbalance(network: Network) -> float:
    """Generation missing to balance the enabled injections (p.u.)."""
    target_p, _ = bus_targets(network, dc=True)
    return -float(np.sum(target_p))


class DcLoadFlowEngine:
    def __init__(self, network: Network, linear_solver: LinearSolver | None = None):
        self.network = network
        self.linear_solver = linear_solver or SparseLuSolver()
        self.system: DcEquationSystem | None = None
        self.factorization: MatrixFactorization | None = None

    def run(self) -> DcLoadFlowResult:
        network = self.network
        params = network.parameters
        network.dc = True
        if not network.enabled_buses or network.reference_bus is None:
            logger.warning("Network '%s' has no bus to calculate", network.id)
            return DcLoadFlowResult(SolverStatus.NO_CALCULATION)

        distributed = 0.0
        if params.distributed_slack:
            imbalance = active_power_imbalance(network)
            if abs(imbalance) * network.base_power >= params.slack_bus_p_max_mismatch:
                distributed = distribute_active_power(
                    network, imbalance, params.balance_type, params.countries_to_balance
                ).distributed

        self.system = DcEquationSystem(network)
        try:
            self.factorization = self.linear_solver.factorize(self.system.matrix())
            x = self.factorization.solve(self.system.rhs())
        except SingularMatrixError as e:
            logger.warning("Singular DC matrix in network '%s': %s", network.id, e)
            return DcLoadFlowResult(SolverStatus.SOLVER_FAILED, distributed_active_power=distributed)
        self.system.update_network(x)
        return DcLoadFlowResult(
            SolverStatus.CONVERGED,
            slack_bus_active_power_mismatch=active_power_imbalance(network),
            distributed_active_power=distributed,
        )
