"""Tests for gridsens.network.pi_model and per-unit conversions."""

from __future__ import annotations

import math

import pytest

from gridsens.core.errors import UnsupportedOperationError
from gridsens.network.per_unit import (
    current_pu_to_amps,
    resolve_nominal_voltages,
    transformer_ratio,
    z_base,
)
from gridsens.network.pi_model import PiModelArray, SimplePiModel, TapDirection


def _array(position: int = 0) -> PiModelArray:
    """Three taps at -5°, 0°, +5°, positions -1..1."""
    models = [SimplePiModel(x=0.1, alpha=math.radians(a)) for a in (-5.0, 0.0, 5.0)]
    return PiModelArray(models, low_tap_position=-1, tap_position=position)


# ======================================================================
# Per-unit
# ======================================================================


class TestPerUnit:
    def test_z_base(self):
        assert z_base(400.0, 100.0) == pytest.approx(1600.0)

    def test_current_conversion(self):
        """1 p.u. at 400 kV / 100 MVA is 100 / (√3 · 400) kA."""
        assert current_pu_to_amps(1.0, 400.0, 100.0) == pytest.approx(144.3376, rel=1e-6)

    def test_transformer_ratio_off_nominal(self):
        """A 400/225 kV transformer between 380 and 225 kV buses."""
        assert transformer_ratio(400.0, 225.0, 380.0, 225.0) == pytest.approx(0.95)

    def test_nominal_voltage_snapping(self):
        mapping = resolve_nominal_voltages([380.0, 400.0, 225.0], resolution=0.1)
        assert mapping == {225.0: 225.0, 380.0: 380.0, 400.0: 380.0}

    def test_no_snapping_by_default(self):
        mapping = resolve_nominal_voltages([380.0, 400.0], resolution=0.0)
        assert mapping[400.0] == 400.0


# ======================================================================
# Pi models
# ======================================================================


class TestSimplePiModel:
    def test_admittance_and_angle(self):
        pi = SimplePiModel(r=0.0, x=0.1)
        assert pi.y == pytest.approx(10.0)
        assert pi.ksi == pytest.approx(0.0)

    def test_tap_operations_unsupported(self):
        with pytest.raises(UnsupportedOperationError):
            SimplePiModel(x=0.1).set_tap_position(0)


class TestPiModelArray:
    """Tap-changing pi model."""

    def test_initial_position(self):
        pi = _array(position=1)
        assert pi.tap_position == 1
        assert pi.a1 == pytest.approx(math.radians(5.0))
        assert pi.high_tap_position == 1

    def test_out_of_range_position(self):
        with pytest.raises(ValueError, match=r"out of range \[-1\.\.1\]"):
            _array(position=2)

    def test_continuous_a1_rounds_to_closest_tap(self):
        pi = _array()
        pi.set_a1(math.radians(4.0))
        assert pi.round_a1_to_closest_tap()
        assert pi.tap_position == 1
        assert pi.a1 == pytest.approx(math.radians(5.0))

    def test_set_position_drops_continuous_value(self):
        pi = _array()
        pi.set_a1(0.3)
        pi.set_tap_position(-1)
        assert pi.a1 == pytest.approx(math.radians(-5.0))

    def test_shift_one_tap(self):
        pi = _array()
        assert pi.shift_one_tap_position_to_change_a1(TapDirection.DECREASE)
        assert pi.tap_position == -1
        # Already at the lowest angle
        assert not pi.shift_one_tap_position_to_change_a1(TapDirection.DECREASE)
