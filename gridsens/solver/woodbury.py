"""Low-rank update of a factorized DC matrix (Woodbury identity).

Opening a branch of susceptance ``b`` between groups g1 and g2 changes the
DC matrix by a rank-one term::

    A' = A - w·b·rᵀ     w = C·(e_g1 - e_g2),  rᵀx = ph(g1) - ph(g2)

For k simultaneous changes, with W and R stacking the columns and
D = diag(b)::

    A'⁻¹y = x + Z·(D⁻¹ - RᵀZ)⁻¹·Rᵀx      x = A⁻¹y,  Z = A⁻¹W

Closing a branch is the same update with ``-b``. The small k×k matrix is
singular when the changes split the network; callers keep enough branches
in the matrix to avoid that.
"""

from __future__ import annotations

import numpy as np

from gridsens.core.errors import SingularMatrixError
from gridsens.equations.dc_system import DcEquationSystem
from gridsens.network.elements import Branch
from gridsens.network.flows import branch_dc_susceptance
from gridsens.solver.linear import MatrixFactorization

MAX_CONDITION = 1e12


class WoodburyCompensation:
    def __init__(self, factorization: MatrixFactorization, w: np.ndarray, r: np.ndarray, d: np.ndarray):
        self.r = r
        self.z = factorization.solve(w)
        if self.z.ndim == 1:
            self.z = self.z.reshape(-1, 1)
        self.m = np.diag(1.0 / d) - r.T @ self.z
        if np.linalg.cond(self.m) > MAX_CONDITION:
            raise SingularMatrixError("Branch changes split the network")

    @property
    def rank(self) -> int:
        return self.m.shape[0]

    def compensate(self, x: np.ndarray) -> np.ndarray:
        """Turn ``x = A⁻¹y`` (one vector or one column per right-hand side) into ``A'⁻¹y``."""
        alpha = np.linalg.solve(self.m, self.r.T @ x)
        return x + self.z @ alpha


def branch_compensation(
    system: DcEquationSystem,
    factorization: MatrixFactorization,
    opened: list[Branch],
    closed: list[Branch] = (),
) -> WoodburyCompensation | None:
    """Compensation for opening and closing branches of ``system``'s network.

    Returns None when there is nothing to compensate.

    Raises:
        SingularMatrixError: the changes disconnect the matrix.
    """
    changes = [(b, system.susceptances[b.num]) for b in opened]
    changes += [(b, -branch_dc_susceptance(system.network, b)) for b in closed]
    if not changes:
        return None
    n_eq = system.combination.shape[0]
    n_var = len(system.variables)
    w = np.zeros((n_eq, len(changes)))
    r = np.zeros((n_var, len(changes)))
    d = np.zeros(len(changes))
    for k, (branch, b) in enumerate(changes):
        g1 = system.bus_group(branch.bus1_num)
        g2 = system.bus_group(branch.bus2_num)
        w[:, k] = system.combination @ system.injection_vector(g1, g2)
        r[:, k] = system.angle_difference_row(g1, g2)
        d[k] = b
    return WoodburyCompensation(factorization, w, r, d)
