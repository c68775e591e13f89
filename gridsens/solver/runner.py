"""Load flow entry point over every component of a grid."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from gridsens.core.logging import log_context
from gridsens.network.builder import build_networks
from gridsens.network.network_model import Network
from gridsens.parameters import ConnectedComponentMode, LoadFlowParameters
from gridsens.solver.ac_engine import AcLoadFlowEngine
from gridsens.solver.dc_engine import DcLoadFlowEngine
from gridsens.solver.linear import LinearSolver, SparseLuSolver
from gridsens.solver.results import (
    ComponentResult,
    LoadFlowResult,
    SolverStatus,
    branch_results,
    bus_results,
)
from gridsens.topology.model import GridModel

logger = logging.getLogger(__name__)


def solve_network(network: Network, dc: bool = False, linear_solver: LinearSolver | None = None) -> ComponentResult:
    """Solve one calculation network and collect its results (physical units)."""
    params = network.parameters
    s_base = network.base_power
    with log_context(network.id):
        start = time.perf_counter()
        if dc:
            dc_result = DcLoadFlowEngine(network, linear_solver).run()
            status, iterations, outer_iterations = dc_result.status, 0, 0
            mismatch, distributed = dc_result.slack_bus_active_power_mismatch, dc_result.distributed_active_power
        else:
            ac_result = AcLoadFlowEngine(network, linear_solver).run()
            status, iterations, outer_iterations = (
                ac_result.status, ac_result.iterations, ac_result.outer_loop_iterations
            )
            mismatch, distributed = ac_result.slack_bus_active_power_mismatch, ac_result.distributed_active_power
        duration_ms = round((time.perf_counter() - start) * 1000, 1)
        logger.info(
            "%s load flow of network '%s': %s after %d iteration(s) in %.1f ms",
            "DC" if dc else "AC", network.id, status.value, iterations, duration_ms,
            extra={
                "network": network.id,
                "iterations": iterations,
                "status": status.value,
                "duration_ms": duration_ms,
            },
        )

        result = ComponentResult(
            network_id=network.id,
            num_cc=network.num_cc,
            num_sc=network.num_sc,
            status=status,
            iterations=iterations,
            outer_loop_iterations=outer_iterations,
            slack_bus_ids=[b.id for b in network.slack_buses],
            slack_bus_active_power_mismatch=mismatch * s_base,
            distributed_active_power=distributed * s_base,
        )
        if status == SolverStatus.CONVERGED:
            result.buses = bus_results(network)
            result.branches = branch_results(network, dc)
            if params.write_state and network.grid is not None:
                network.update_state(params.write_slack_terminal)
        return result


def run_load_flow(
    grid: GridModel,
    parameters: LoadFlowParameters | None = None,
    dc: bool = False,
    linear_solver: LinearSolver | None = None,
) -> LoadFlowResult:
    """Build the networks of ``grid`` and solve them.

    Components are solved in parallel threads when ``max_workers > 1``;
    each network is owned by the thread solving it.

    Raises:
        StructuralError: malformed grid topology.
        ParameterError: invalid parameter combination.
    """
    parameters = parameters or LoadFlowParameters()
    linear_solver = linear_solver or SparseLuSolver()
    networks = build_networks(grid, parameters)
    if parameters.connected_component_mode == ConnectedComponentMode.MAIN:
        networks = [n for n in networks if n.num_cc == 0]

    if parameters.max_workers > 1 and len(networks) > 1:
        with ThreadPoolExecutor(max_workers=parameters.max_workers) as executor:
            components = list(executor.map(lambda n: solve_network(n, dc, linear_solver), networks))
    else:
        components = [solve_network(n, dc, linear_solver) for n in networks]
    return LoadFlowResult(components)
