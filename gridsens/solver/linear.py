"""Sparse linear-solve capability.

Engines depend on the ``LinearSolver`` interface only; the default
``SparseLuSolver`` wraps SuperLU (``scipy.sparse.linalg.splu``). A
factorization is immutable once built, so one instance may be shared by
threads solving different right-hand sides.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu

from gridsens.core.errors import SingularMatrixError


class MatrixFactorization(ABC):
    @abstractmethod
    def solve(self, rhs: np.ndarray) -> np.ndarray:
        """Solve ``A·x = rhs`` (``rhs`` may hold several columns)."""

    @abstractmethod
    def solve_transposed(self, rhs: np.ndarray) -> np.ndarray:
        """Solve ``Aᵀ·x = rhs``."""


class LinearSolver(ABC):
    @abstractmethod
    def factorize(self, matrix: sp.spmatrix) -> MatrixFactorization:
        """Factorize a square sparse matrix.

        Raises:
            SingularMatrixError: the matrix cannot be factorized.
        """

    def solve(self, matrix: sp.spmatrix, rhs: np.ndarray) -> np.ndarray:
        return self.factorize(matrix).solve(rhs)


class _SuperLuFactorization(MatrixFactorization):
    def __init__(self, lu):
        self._lu = lu

    def _checked(self, x: np.ndarray) -> np.ndarray:
        if not np.all(np.isfinite(x)):
            raise SingularMatrixError("Linear solve produced non-finite values")
        return x

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        return self._checked(self._lu.solve(np.asarray(rhs, dtype=float)))

    def solve_transposed(self, rhs: np.ndarray) -> np.ndarray:
        return self._checked(self._lu.solve(np.asarray(rhs, dtype=float), trans="T"))


class _EmptyFactorization(MatrixFactorization):
    def solve(self, rhs: np.ndarray) -> np.ndarray:
        return np.asarray(rhs, dtype=float).copy()

    solve_transposed = solve


class SparseLuSolver(LinearSolver):
    """SuperLU factorization of CSC matrices."""

    def factorize(self, matrix: sp.spmatrix) -> MatrixFactorization:
        if matrix.shape[0] != matrix.shape[1]:
            raise SingularMatrixError(f"Matrix is not square: {matrix.shape}")
        if matrix.shape[0] == 0:
            return _EmptyFactorization()
        try:
            return _SuperLuFactorization(splu(sp.csc_matrix(matrix)))
        except RuntimeError as e:
            # SuperLU reports exact singularity as a RuntimeError
            raise SingularMatrixError(str(e)) from e
