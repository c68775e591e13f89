"""Newton-Raphson and DC load flow engines."""

from gridsens.solver.ac_engine import AcLoadFlowEngine, AcLoadFlowResult
from gridsens.solver.dc_engine import DcLoadFlowEngine, DcLoadFlowResult
from gridsens.solver.linear import LinearSolver, MatrixFactorization, SparseLuSolver
from gridsens.solver.results import LoadFlowResult, SolverStatus
from gridsens.solver.runner import run_load_flow, solve_network

__all__ = [
    "AcLoadFlowEngine",
    "AcLoadFlowResult",
    "DcLoadFlowEngine",
    "DcLoadFlowResult",
    "LinearSolver",
    "LoadFlowResult",
    "MatrixFactorization",
    "SparseLuSolver",
    "SolverStatus",
    "run_load_flow",
    "solve_network",
]
