"""AC load flow: Newton-Raphson wrapped in outer loops.

Each outer loop iteration builds a fresh equation system from the current
network (controls may have switched mode), runs Newton-Raphson from the
current state and asks the outer loops, in order, whether the solution is
final. The first unstable loop triggers a new iteration.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from gridsens.core.errors import SingularMatrixError
from gridsens.equations.ac_system import AcEquationSystem
from gridsens.equations.dc_system import DcEquationSystem
from gridsens.network.network_model import Network
from gridsens.network.voltage_control import MergeStatus, VoltageControlType
from gridsens.parameters import VoltageInitMode
from gridsens.solver.linear import LinearSolver, SparseLuSolver
from gridsens.solver.newton_raphson import NewtonRaphson
from gridsens.solver.outer_loops import (
    DistributedSlackOuterLoop,
    OuterLoop,
    OuterLoopStatus,
    create_outer_loops,
    slack_bus_mismatch,
)
from gridsens.solver.results import SolverStatus

logger = logging.getLogger(__name__)


@dataclass
class AcLoadFlowResult:
    status: SolverStatus
    iterations: int = 0
    outer_loop_iterations: int = 0
    slack_bus_active_power_mismatch: float = 0.0  # p.u.
    distributed_active_power: float = 0.0  # p.u.


# ----------------------------------------------------------------------
# Voltage initialization
# ----------------------------------------------------------------------

def _uniform_values(network: Network) -> None:
    for bus in network.buses:
        if not bus.disabled:
            bus.v = 1.0
            bus.angle = 0.0
    # Start controlled buses at their target, whole zero-impedance group included
    rep = network.equation_bus_map()
    for control in network.voltage_controls:
        if control.merge_status != MergeStatus.MAIN:
            continue
        group = rep[control.controlled_bus_num]
        for bus in network.buses:
            if rep[bus.num] == group:
                bus.v = control.target_v


def _previous_values(network: Network) -> None:
    for bus in network.buses:
        if bus.disabled:
            continue
        if not math.isfinite(bus.v) or bus.v <= 0:
            bus.v = 1.0
        if not math.isfinite(bus.angle):
            bus.angle = 0.0


def _dc_values(network: Network, linear_solver: LinearSolver) -> None:
    _uniform_values(network)
    system = DcEquationSystem(network)
    try:
        x = linear_solver.solve(system.matrix(), system.rhs())
    except SingularMatrixError as e:
        logger.warning("DC initialization of network '%s' failed (%s), using uniform values", network.id, e)
        return
    angles = system.bus_angles(system.group_angles(x))
    for bus in network.buses:
        if not bus.disabled:
            bus.angle = float(angles[bus.num])


def initialize_voltages(network: Network, mode: VoltageInitMode, linear_solver: LinearSolver | None = None) -> None:
    if mode == VoltageInitMode.PREVIOUS_VALUES:
        _previous_values(network)
    elif mode == VoltageInitMode.DC_VALUES:
        _dc_values(network, linear_solver or SparseLuSolver())
    else:
        _uniform_values(network)


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------

class AcLoadFlowEngine:
    def __init__(
        self,
        network: Network,
        linear_solver: LinearSolver | None = None,
        outer_loops: list[OuterLoop] | None = None,
    ):
        self.network = network
        self.linear_solver = linear_solver or SparseLuSolver()
        self.outer_loops = create_outer_loops(network.parameters) if outer_loops is None else outer_loops
        self.system: AcEquationSystem | None = None

    def _calculable(self) -> bool:
        network = self.network
        if not network.enabled_buses:
            logger.warning("Network '%s' has no enabled bus", network.id)
            return False
        if network.reference_bus is None:
            logger.warning("Network '%s' has no reference bus", network.id)
            return False
        if not any(
            vc.control_type == VoltageControlType.GENERATOR and vc.merge_status == MergeStatus.MAIN
            for vc in network.voltage_controls
        ):
            logger.warning("Network '%s' has no generator controlling voltage", network.id)
            return False
        return True

    def run(self, init_voltages: bool = True) -> AcLoadFlowResult:
        """Solve the network in place.

        Args:
            init_voltages: apply the configured voltage initialization;
                False warm-starts from the current bus values.
        """
        network = self.network
        params = network.parameters
        network.dc = False
        if not self._calculable():
            return AcLoadFlowResult(SolverStatus.NO_CALCULATION)

        if init_voltages:
            initialize_voltages(network, params.voltage_init_mode, self.linear_solver)
        else:
            _previous_values(network)
        for loop in self.outer_loops:
            loop.initialize(network)

        iterations = 0
        outer_iterations = 0
        while True:
            self.system = AcEquationSystem(network)
            nr = NewtonRaphson(self.system, params, self.linear_solver).run()
            iterations += nr.iterations
            status = nr.status
            if status != SolverStatus.CONVERGED:
                break

            unstable = next(
                (loop for loop in self.outer_loops if loop.check(network) == OuterLoopStatus.UNSTABLE), None
            )
            if unstable is None:
                break
            outer_iterations += 1
            logger.debug("Outer loop '%s' unstable in network '%s'", unstable.name, network.id)
            if outer_iterations >= params.max_outer_loop_iterations:
                logger.warning(
                    "Network '%s' reached %d outer loop iterations", network.id, outer_iterations
                )
                status = SolverStatus.MAX_ITERATION_REACHED
                break

        distributed = sum(
            loop.distributed for loop in self.outer_loops if isinstance(loop, DistributedSlackOuterLoop)
        )
        return AcLoadFlowResult(
            status=status,
            iterations=iterations,
            outer_loop_iterations=outer_iterations,
            slack_bus_active_power_mismatch=slack_bus_mismatch(network) if status == SolverStatus.CONVERGED else 0.0,
            distributed_active_power=distributed,
        )
