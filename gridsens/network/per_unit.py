"""Per-unit system conversions.

Base quantities:
  S_base (MVA): system-wide, 100 MVA by default
  V_base (kV): nominal voltage of the bus
  Z_base = V_base² / S_base  (Ω)
  I_base = S_base / (√3 × V_base)  (kA)

Branch impedances are expressed on the side 2 voltage base; the side 1
nominal voltage enters the model through the per-unit ratio ``r1``.
"""

from __future__ import annotations

import math
from typing import Iterable


def z_base(v_base_kv: float, s_base_mva: float) -> float:
    """Base impedance in ohms: Z_base = V²/S."""
    return (v_base_kv ** 2) / s_base_mva


def i_base(v_base_kv: float, s_base_mva: float) -> float:
    """Base current in kA: I_base = S / (√3·V)."""
    return s_base_mva / (math.sqrt(3) * v_base_kv)


def ohm_to_pu(z_ohm: float, v_base_kv: float, s_base_mva: float) -> float:
    """Convert an impedance from ohms to per-unit."""
    return z_ohm / z_base(v_base_kv, s_base_mva)


def siemens_to_pu(y_siemens: float, v_base_kv: float, s_base_mva: float) -> float:
    """Convert an admittance from siemens to per-unit."""
    return y_siemens * z_base(v_base_kv, s_base_mva)


def mw_to_pu(p_mw: float, s_base_mva: float) -> float:
    return p_mw / s_base_mva


def pu_to_mw(p_pu: float, s_base_mva: float) -> float:
    return p_pu * s_base_mva


def current_pu_to_amps(i_pu: float, v_base_kv: float, s_base_mva: float) -> float:
    """Per-unit current to amperes: I = i_pu · I_base · 1000."""
    return i_pu * i_base(v_base_kv, s_base_mva) * 1000.0


def line_ratio(nominal_v1: float, nominal_v2: float) -> float:
    """Per-unit ratio of a line joining buses of different nominal voltages."""
    return nominal_v1 / nominal_v2


def transformer_ratio(
    rated_u1: float,
    rated_u2: float,
    nominal_v1: float,
    nominal_v2: float,
    rho: float = 1.0,
) -> float:
    """Per-unit ratio r1 of a transformer.

    rated_u1, rated_u2: winding rated voltages (kV)
    nominal_v1, nominal_v2: bus nominal voltages (kV)
    rho: tap changer ratio correction
    """
    return rho * rated_u2 / rated_u1 * nominal_v1 / nominal_v2


def resolve_nominal_voltages(voltages: Iterable[float], resolution: float) -> dict[float, float]:
    """Snap nominal voltages that differ by less than ``resolution`` (relative).

    Returns a mapping from each input voltage to the value it is snapped to,
    the lowest voltage of its cluster. A resolution of 0 leaves every
    voltage unchanged.
    """
    distinct = sorted(set(voltages))
    mapping: dict[float, float] = {}
    cluster_value: float | None = None
    for v in distinct:
        if cluster_value is not None and resolution > 0 and (v - cluster_value) / cluster_value <= resolution:
            mapping[v] = cluster_value
        else:
            cluster_value = v
            mapping[v] = v
    return mapping
