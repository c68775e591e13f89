"""Pi-model of a calculation branch.

All values are per-unit on the side 2 voltage base. ``r1`` and ``a1``
(radians) describe the ideal transformer on side 1.

Two implementations:

- ``SimplePiModel``: fixed parameters, tap operations are unsupported.
- ``PiModelArray``: one ``SimplePiModel`` per tap position, with a current
  position and optional continuous ``a1``/``r1`` overrides used while a
  control runs in continuous mode.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from gridsens.core.errors import UnsupportedOperationError


class TapDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class PiModel(ABC):
    """Common interface of fixed and tap-changing pi-models."""

    r: float
    x: float
    g1: float
    b1: float
    g2: float
    b2: float

    @property
    @abstractmethod
    def r1(self) -> float: ...

    @property
    @abstractmethod
    def a1(self) -> float: ...

    @abstractmethod
    def set_r1(self, r1: float) -> None: ...

    @abstractmethod
    def set_a1(self, a1: float) -> None: ...

    @property
    def z(self) -> float:
        return math.hypot(self.r, self.x)

    @property
    def y(self) -> float:
        return 1.0 / self.z

    @property
    def ksi(self) -> float:
        return math.atan2(self.r, self.x)

    # ------------------------------------------------------------------
    # Tap operations
    # ------------------------------------------------------------------

    @property
    def has_taps(self) -> bool:
        return False

    @property
    def tap_position(self) -> int:
        raise UnsupportedOperationError("Fixed pi model has no tap position")

    def set_tap_position(self, position: int) -> None:
        raise UnsupportedOperationError("Fixed pi model has no tap position")

    def round_a1_to_closest_tap(self) -> bool:
        raise UnsupportedOperationError("Fixed pi model has no tap position")

    def round_r1_to_closest_tap(self) -> bool:
        raise UnsupportedOperationError("Fixed pi model has no tap position")

    def shift_one_tap_position_to_change_a1(self, direction: TapDirection) -> bool:
        raise UnsupportedOperationError("Fixed pi model has no tap position")


@dataclass
class SimplePiModel(PiModel):
    r: float = 0.0
    x: float = 0.0
    g1: float = 0.0
    b1: float = 0.0
    g2: float = 0.0
    b2: float = 0.0
    rho: float = 1.0
    alpha: float = 0.0  # rad

    @property
    def r1(self) -> float:
        return self.rho

    @property
    def a1(self) -> float:
        return self.alpha

    def set_r1(self, r1: float) -> None:
        self.rho = r1

    def set_a1(self, a1: float) -> None:
        self.alpha = a1


class PiModelArray(PiModel):
    """Tap-changing pi-model.

    Args:
        models: one pi-model per tap, ordered from ``low_tap_position``
        low_tap_position: position of ``models[0]``
        tap_position: initial position
    """

    def __init__(self, models: list[SimplePiModel], low_tap_position: int, tap_position: int):
        if not models:
            raise ValueError("Pi model array needs at least one tap")
        self.models = models
        self.low_tap_position = low_tap_position
        self._tap_position = low_tap_position
        self._continuous_r1: float | None = None
        self._continuous_a1: float | None = None
        self.set_tap_position(tap_position)

    def __repr__(self) -> str:
        return (
            f"PiModelArray(low_tap_position={self.low_tap_position}, "
            f"tap_position={self._tap_position}, taps={len(self.models)})"
        )

    @property
    def high_tap_position(self) -> int:
        return self.low_tap_position + len(self.models) - 1

    @property
    def _model(self) -> SimplePiModel:
        return self.models[self._tap_position - self.low_tap_position]

    # Delegated electrical values

    @property
    def r(self) -> float:  # type: ignore[override]
        return self._model.r

    @property
    def x(self) -> float:  # type: ignore[override]
        return self._model.x

    @property
    def g1(self) -> float:  # type: ignore[override]
        return self._model.g1

    @property
    def b1(self) -> float:  # type: ignore[override]
        return self._model.b1

    @property
    def g2(self) -> float:  # type: ignore[override]
        return self._model.g2

    @property
    def b2(self) -> float:  # type: ignore[override]
        return self._model.b2

    @property
    def r1(self) -> float:
        return self._continuous_r1 if self._continuous_r1 is not None else self._model.r1

    @property
    def a1(self) -> float:
        return self._continuous_a1 if self._continuous_a1 is not None else self._model.a1

    def set_r1(self, r1: float) -> None:
        self._continuous_r1 = r1

    def set_a1(self, a1: float) -> None:
        self._continuous_a1 = a1

    @property
    def min_a1(self) -> float:
        return min(m.a1 for m in self.models)

    @property
    def max_a1(self) -> float:
        return max(m.a1 for m in self.models)

    @property
    def min_r1(self) -> float:
        return min(m.r1 for m in self.models)

    @property
    def max_r1(self) -> float:
        return max(m.r1 for m in self.models)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def has_taps(self) -> bool:
        return True

    @property
    def tap_position(self) -> int:
        return self._tap_position

    def set_tap_position(self, position: int) -> None:
        """Move to ``position`` and drop any continuous override.

        Raises:
            ValueError: position outside [low..high].
        """
        if position < self.low_tap_position or position > self.high_tap_position:
            raise ValueError(
                f"Tap position {position} out of range "
                f"[{self.low_tap_position}..{self.high_tap_position}]"
            )
        self._tap_position = position
        self._continuous_r1 = None
        self._continuous_a1 = None

    def _closest_position(self, value: float, attribute: str) -> int:
        distances = [abs(getattr(m, attribute) - value) for m in self.models]
        return self.low_tap_position + distances.index(min(distances))

    def round_a1_to_closest_tap(self) -> bool:
        """Snap the continuous a1 to the closest tap. Returns True if the position changed."""
        if self._continuous_a1 is None:
            return False
        old_position = self._tap_position
        r1 = self._continuous_r1
        self.set_tap_position(self._closest_position(self._continuous_a1, "a1"))
        # Continuous r1 may still be driven by another control
        self._continuous_r1 = r1
        return self._tap_position != old_position

    def round_r1_to_closest_tap(self) -> bool:
        """Snap the continuous r1 to the closest tap. Returns True if the position changed."""
        if self._continuous_r1 is None:
            return False
        old_position = self._tap_position
        a1 = self._continuous_a1
        self.set_tap_position(self._closest_position(self._continuous_r1, "r1"))
        self._continuous_a1 = a1
        return self._tap_position != old_position

    def shift_one_tap_position_to_change_a1(self, direction: TapDirection) -> bool:
        """Move one tap in the position that changes a1 in ``direction``.

        Returns False when no neighbouring tap moves a1 that way.
        """
        current = self.a1
        for candidate in (self._tap_position - 1, self._tap_position + 1):
            if candidate < self.low_tap_position or candidate > self.high_tap_position:
                continue
            a1 = self.models[candidate - self.low_tap_position].a1
            if (direction == TapDirection.INCREASE and a1 > current) or (
                direction == TapDirection.DECREASE and a1 < current
            ):
                self.set_tap_position(candidate)
                return True
        return False
