"""Closed-form branch flow terms and their partial derivatives.

AC pi-model with side 1 ideal transformer (r1, a1), side 2 ratio 1:

    theta1 = ksi - a1 - ph1 + ph2
    theta2 = ksi + a1 + ph1 - ph2
    p1 = r1²·v1²·(g1 + y·sin ksi) - r1·v1·y·v2·sin theta1
    q1 = r1²·v1²·(-b1 + y·cos ksi) - r1·v1·y·v2·cos theta1
    p2 = v2²·(g2 + y·sin ksi) - y·r1·v1·v2·sin theta2
    q2 = v2²·(-b2 + y·cos ksi) - y·r1·v1·v2·cos theta2

with y = 1/|z| and ksi = atan2(r, x). Every function accepts numpy arrays
(one entry per branch) or scalars.

DC model: p1 = b·(ph1 - ph2 + a1), p2 = -p1.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from gridsens.core.errors import EquationSystemError
from gridsens.parameters import DcApproximationType


@dataclass
class BranchDerivatives:
    """Partial derivatives of one flow function (arrays over branches)."""
    dv1: np.ndarray
    dv2: np.ndarray
    dph1: np.ndarray
    dph2: np.ndarray
    da1: np.ndarray
    dr1: np.ndarray


def _thetas(ksi, a1, ph1, ph2):
    theta1 = ksi - a1 - ph1 + ph2
    theta2 = ksi + a1 + ph1 - ph2
    return theta1, theta2


def closed_branch_flows(v1, ph1, v2, ph2, r1, a1, y, ksi, g1, b1, g2, b2):
    """Return (p1, q1, p2, q2) of closed branches."""
    theta1, theta2 = _thetas(ksi, a1, ph1, ph2)
    sin_ksi = np.sin(ksi)
    cos_ksi = np.cos(ksi)
    p1 = r1 * r1 * v1 * v1 * (g1 + y * sin_ksi) - r1 * v1 * y * v2 * np.sin(theta1)
    q1 = r1 * r1 * v1 * v1 * (-b1 + y * cos_ksi) - r1 * v1 * y * v2 * np.cos(theta1)
    p2 = v2 * v2 * (g2 + y * sin_ksi) - y * r1 * v1 * v2 * np.sin(theta2)
    q2 = v2 * v2 * (-b2 + y * cos_ksi) - y * r1 * v1 * v2 * np.cos(theta2)
    return p1, q1, p2, q2


def closed_branch_derivatives(v1, ph1, v2, ph2, r1, a1, y, ksi, g1, b1, g2, b2):
    """Return derivatives of (p1, q1, p2, q2) as four ``BranchDerivatives``."""
    theta1, theta2 = _thetas(ksi, a1, ph1, ph2)
    sin_ksi = np.sin(ksi)
    cos_ksi = np.cos(ksi)
    sin_t1, cos_t1 = np.sin(theta1), np.cos(theta1)
    sin_t2, cos_t2 = np.sin(theta2), np.cos(theta2)

    dp1_dph1 = y * r1 * v1 * v2 * cos_t1
    dp1 = BranchDerivatives(
        dv1=2 * r1 * r1 * v1 * (g1 + y * sin_ksi) - r1 * y * v2 * sin_t1,
        dv2=-y * r1 * v1 * sin_t1,
        dph1=dp1_dph1,
        dph2=-dp1_dph1,
        da1=dp1_dph1,
        dr1=2 * r1 * v1 * v1 * (g1 + y * sin_ksi) - v1 * y * v2 * sin_t1,
    )

    dq1_dph1 = -r1 * v1 * y * v2 * sin_t1
    dq1 = BranchDerivatives(
        dv1=2 * r1 * r1 * v1 * (-b1 + y * cos_ksi) - r1 * y * v2 * cos_t1,
        dv2=-r1 * v1 * y * cos_t1,
        dph1=dq1_dph1,
        dph2=-dq1_dph1,
        da1=dq1_dph1,
        dr1=2 * r1 * v1 * v1 * (-b1 + y * cos_ksi) - v1 * y * v2 * cos_t1,
    )

    dp2_dph1 = -y * r1 * v1 * v2 * cos_t2
    dp2 = BranchDerivatives(
        dv1=-y * r1 * v2 * sin_t2,
        dv2=2 * v2 * (g2 + y * sin_ksi) - y * r1 * v1 * sin_t2,
        dph1=dp2_dph1,
        dph2=-dp2_dph1,
        da1=dp2_dph1,
        dr1=-y * v1 * v2 * sin_t2,
    )

    dq2_dph1 = y * r1 * v1 * v2 * sin_t2
    dq2 = BranchDerivatives(
        dv1=-y * r1 * v2 * cos_t2,
        dv2=2 * v2 * (-b2 + y * cos_ksi) - y * r1 * v1 * cos_t2,
        dph1=dq2_dph1,
        dph2=-dq2_dph1,
        da1=dq2_dph1,
        dr1=-y * v1 * v2 * cos_t2,
    )
    return dp1, dq1, dp2, dq2


def current_magnitude(p, q, v):
    """Per-unit current magnitude at a branch side: i = √(p² + q²) / v."""
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.sqrt(p * p + q * q) / v


def current_derivative(p, q, v, dp: BranchDerivatives, dq: BranchDerivatives, side: int) -> BranchDerivatives:
    """Chain rule for i = √(p² + q²) / v, v being the voltage of ``side``."""
    s = np.sqrt(p * p + q * q)
    with np.errstate(divide="ignore", invalid="ignore"):
        k = np.where(s > 0, 1.0 / (s * v), 0.0)
        dv_self = -s / (v * v)

    def combine(a, b):
        return k * (p * a + q * b)

    d = BranchDerivatives(
        dv1=combine(dp.dv1, dq.dv1),
        dv2=combine(dp.dv2, dq.dv2),
        dph1=combine(dp.dph1, dq.dph1),
        dph2=combine(dp.dph2, dq.dph2),
        da1=combine(dp.da1, dq.da1),
        dr1=combine(dp.dr1, dq.dr1),
    )
    if side == 1:
        d.dv1 = d.dv1 + dv_self
    else:
        d.dv2 = d.dv2 + dv_self
    return d


# ----------------------------------------------------------------------
# DC
# ----------------------------------------------------------------------

def dc_susceptance(
    branch_id: str,
    r: float,
    x: float,
    r1: float,
    approximation: DcApproximationType,
    use_transformer_ratio: bool,
) -> float:
    """Susceptance ``b`` of the DC branch term.

    Raises:
        EquationSystemError: zero reactance with the IGNORE_R approximation.
    """
    if approximation == DcApproximationType.IGNORE_R:
        if x == 0.0:
            raise EquationSystemError(
                f"Branch '{branch_id}' has a zero reactance, DC approximation ignoring R is not possible"
            )
        b = 1.0 / x
    else:
        z2 = r * r + x * x
        if z2 == 0.0:
            raise EquationSystemError(f"Branch '{branch_id}' has a zero impedance")
        b = x / z2
    if use_transformer_ratio:
        b *= r1
    return b


def dc_branch_flow(b, ph1, ph2, a1):
    """Active flow at side 1 of a DC branch."""
    return b * (ph1 - ph2 + a1)
