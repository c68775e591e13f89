"""Tests for gridsens.solver.linear and gridsens.solver.woodbury."""

from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp

from gridsens.core.errors import SingularMatrixError
from gridsens.network.builder import build_networks
from gridsens.network.state import NetworkState
from gridsens.solver.linear import SparseLuSolver
from gridsens.solver.woodbury import WoodburyCompensation


def _laplacian() -> sp.csc_matrix:
    """Reduced Laplacian of a three-bus ring (susceptance 10), reference bus removed."""
    return sp.csc_matrix(np.array([[20.0, -10.0], [-10.0, 20.0]]))


class TestSparseLuSolver:
    def test_solve_several_rhs(self):
        solver = SparseLuSolver()
        rhs = np.array([[1.0, 0.0], [0.0, 1.0]])
        x = solver.factorize(_laplacian()).solve(rhs)
        assert x == pytest.approx(np.linalg.inv(_laplacian().toarray()))

    def test_transposed(self):
        matrix = sp.csc_matrix(np.array([[2.0, 1.0], [0.0, 4.0]]))
        x = SparseLuSolver().factorize(matrix).solve_transposed(np.array([2.0, 9.0]))
        assert x == pytest.approx([1.0, 2.0])

    def test_singular(self):
        with pytest.raises(SingularMatrixError):
            SparseLuSolver().factorize(sp.csc_matrix(np.array([[1.0, 1.0], [1.0, 1.0]])))

    def test_not_square(self):
        with pytest.raises(SingularMatrixError, match="not square"):
            SparseLuSolver().factorize(sp.csc_matrix(np.ones((2, 3))))

    def test_empty_system(self):
        x = SparseLuSolver().factorize(sp.csc_matrix((0, 0))).solve(np.zeros(0))
        assert x.shape == (0,)


class TestWoodbury:
    """A compensated solve matches a solve of the modified matrix."""

    def test_open_branch_between_unknowns(self):
        matrix = _laplacian()
        # Branch between buses 1 and 2 of the ring
        w = np.array([[1.0], [-1.0]])
        compensation = WoodburyCompensation(SparseLuSolver().factorize(matrix), w, w.copy(), np.array([10.0]))
        y = np.array([1.0, -0.5])
        x = SparseLuSolver().factorize(matrix).solve(y)
        expected = np.linalg.solve(matrix.toarray() - 10.0 * w @ w.T, y)
        assert compensation.compensate(x) == pytest.approx(expected)
        assert compensation.rank == 1

    def test_split_detected(self):
        """Opening both branches of bus 1 leaves it floating."""
        matrix = sp.csc_matrix(np.array([[10.0]]))
        w = np.array([[1.0]])
        with pytest.raises(SingularMatrixError, match="split"):
            WoodburyCompensation(SparseLuSolver().factorize(matrix), w, w, np.array([10.0]))


class TestNetworkState:
    def test_restore_undoes_changes(self, loop_grid, params):
        (network,) = build_networks(loop_grid, params)
        state = NetworkState.save(network)
        branch = network.get_branch("PST13")
        branch.disabled = True
        branch.pi_model.set_tap_position(2)
        network.get_load("LD3").target_p = 0.0
        state.restore(network)
        assert not network.get_branch("PST13").disabled
        assert network.get_branch("PST13").pi_model.tap_position == 1
        assert network.get_load("LD3").target_p == pytest.approx(2.0)
