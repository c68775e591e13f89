"""Newton-Raphson iterations on an AC equation system.

Algorithm:
1. Evaluate the mismatch vector f = C·values - targets
2. Stop if max |f| < newton_raphson_conv_eps
3. Build the Jacobian J = C·d(values)/dx (analytical derivatives)
4. Solve J × Δx = -f through the injected linear solver
5. Optionally scale Δx so that no voltage moves more than max_voltage_change
6. Update x and write it back into the network, repeat

A singular Jacobian or a non-finite mismatch ends the iterations with
SOLVER_FAILED; it is never raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from gridsens.core.errors import SingularMatrixError
from gridsens.equations.ac_system import AcEquationSystem
from gridsens.equations.system import VariableType
from gridsens.parameters import LoadFlowParameters, StateVectorScalingMode
from gridsens.solver.linear import LinearSolver, SparseLuSolver
from gridsens.solver.results import SolverStatus

logger = logging.getLogger(__name__)


@dataclass
class NewtonRaphsonResult:
    status: SolverStatus
    iterations: int
    max_mismatch: float  # p.u.


class NewtonRaphson:
    def __init__(
        self,
        system: AcEquationSystem,
        parameters: LoadFlowParameters,
        linear_solver: LinearSolver | None = None,
    ):
        self.system = system
        self.parameters = parameters
        self.linear_solver = linear_solver or SparseLuSolver()
        self._v_columns = np.array(
            [col for col, var in enumerate(system.variables) if var.type == VariableType.BUS_V], dtype=int
        )

    def _scale(self, dx: np.ndarray) -> np.ndarray:
        if self.parameters.state_vector_scaling != StateVectorScalingMode.MAX_VOLTAGE_CHANGE:
            return dx
        if not len(self._v_columns):
            return dx
        max_dv = float(np.max(np.abs(dx[self._v_columns])))
        limit = self.parameters.max_voltage_change
        if max_dv > limit:
            logger.debug("Scaling Newton step by %.3f (max voltage change %.4f p.u.)", limit / max_dv, max_dv)
            return dx * (limit / max_dv)
        return dx

    def run(self) -> NewtonRaphsonResult:
        system = self.system
        params = self.parameters
        network_id = system.network.id
        x = system.state_vector()
        iterations = 0

        while True:
            f = system.mismatch()
            if not np.all(np.isfinite(f)):
                logger.warning("Non-finite mismatch in network '%s' at iteration %d", network_id, iterations)
                return NewtonRaphsonResult(SolverStatus.SOLVER_FAILED, iterations, float("nan"))
            max_mismatch = float(np.max(np.abs(f))) if len(f) else 0.0
            if max_mismatch < params.newton_raphson_conv_eps:
                return NewtonRaphsonResult(SolverStatus.CONVERGED, iterations, max_mismatch)
            if iterations >= params.max_newton_raphson_iterations:
                logger.warning(
                    "Newton-Raphson of network '%s' stopped after %d iterations, max mismatch %.3e p.u.",
                    network_id, iterations, max_mismatch,
                )
                return NewtonRaphsonResult(SolverStatus.MAX_ITERATION_REACHED, iterations, max_mismatch)

            try:
                dx = self.linear_solver.solve(system.jacobian(), -f)
            except SingularMatrixError as e:
                logger.warning("Singular Jacobian in network '%s': %s", network_id, e)
                return NewtonRaphsonResult(SolverStatus.SOLVER_FAILED, iterations, max_mismatch)

            x = x + self._scale(dx)
            system.update_network(x)
            iterations += 1
            logger.debug("Network '%s' iteration %d: max mismatch %.3e p.u.", network_id, iterations, max_mismatch)
