"""
Forward-mode automatic differentiation for the well equations.

Each well equation is evaluated with `Evaluation` objects carrying the value
and the derivatives with respect to the reservoir primary variables of one
perforated cell followed by the well primary variables. The derivative layout
is therefore `[d/dx_cell_0, ..., d/dx_cell_{numEq-1}, d/dx_well_0, ...]`.
"""

import typing

import numpy as np

__all__ = ["Evaluation"]

Operand = typing.Union["Evaluation", float, int, np.floating]


class Evaluation:
    """A scalar value together with its derivative vector."""

    __slots__ = ("value", "derivatives")
    # numpy scalars defer to the reflected operators
    __array_ufunc__ = None

    def __init__(self, value: float, derivatives: np.ndarray) -> None:
        self.value = float(value)
        self.derivatives = derivatives

    @classmethod
    def constant(cls, value: float, size: int) -> "Evaluation":
        """
        Create an evaluation with zero derivatives.

        :param value: The value.
        :param size: Length of the derivative vector.
        :return: The constant `Evaluation`.
        """
        return cls(value, np.zeros(size, dtype=np.float64))

    @classmethod
    def variable(cls, value: float, index: int, size: int) -> "Evaluation":
        """
        Create an independent variable, seeded at `index`.

        :param value: The value of the variable.
        :param index: Position of the variable in the derivative vector.
        :param size: Length of the derivative vector.
        :return: The seeded `Evaluation`.
        """
        derivatives = np.zeros(size, dtype=np.float64)
        derivatives[index] = 1.0
        return cls(value, derivatives)

    @property
    def size(self) -> int:
        return self.derivatives.shape[0]

    def _coerce(self, other: Operand) -> "Evaluation":
        if isinstance(other, Evaluation):
            return other
        return Evaluation(float(other), np.zeros_like(self.derivatives))

    def __add__(self, other: Operand) -> "Evaluation":
        if isinstance(other, Evaluation):
            return Evaluation(self.value + other.value, self.derivatives + other.derivatives)
        return Evaluation(self.value + float(other), self.derivatives.copy())

    __radd__ = __add__

    def __sub__(self, other: Operand) -> "Evaluation":
        if isinstance(other, Evaluation):
            return Evaluation(self.value - other.value, self.derivatives - other.derivatives)
        return Evaluation(self.value - float(other), self.derivatives.copy())

    def __rsub__(self, other: Operand) -> "Evaluation":
        return self._coerce(other) - self

    def __mul__(self, other: Operand) -> "Evaluation":
        if isinstance(other, Evaluation):
            return Evaluation(
                self.value * other.value,
                self.derivatives * other.value + other.derivatives * self.value,
            )
        factor = float(other)
        return Evaluation(self.value * factor, self.derivatives * factor)

    __rmul__ = __mul__

    def __truediv__(self, other: Operand) -> "Evaluation":
        if isinstance(other, Evaluation):
            return Evaluation(
                self.value / other.value,
                (self.derivatives * other.value - other.derivatives * self.value)
                / (other.value * other.value),
            )
        divisor = float(other)
        return Evaluation(self.value / divisor, self.derivatives / divisor)

    def __rtruediv__(self, other: Operand) -> "Evaluation":
        return self._coerce(other) / self

    def __neg__(self) -> "Evaluation":
        return Evaluation(-self.value, -self.derivatives)

    def __abs__(self) -> "Evaluation":
        return -self if self.value < 0.0 else Evaluation(self.value, self.derivatives.copy())

    def __lt__(self, other: Operand) -> bool:
        return self.value < _value_of(other)

    def __le__(self, other: Operand) -> bool:
        return self.value <= _value_of(other)

    def __gt__(self, other: Operand) -> bool:
        return self.value > _value_of(other)

    def __ge__(self, other: Operand) -> bool:
        return self.value >= _value_of(other)

    def __float__(self) -> float:
        return self.value

    def __repr__(self) -> str:
        return f"Evaluation(value={self.value!r}, derivatives={self.derivatives!r})"


def _value_of(operand: Operand) -> float:
    if isinstance(operand, Evaluation):
        return operand.value
    return float(operand)
