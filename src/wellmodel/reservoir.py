"""
Reservoir-side collaborators of the well model.

The reservoir discretisation is owned by the simulator. The well model only
needs the per-cell fluid state of the current Newton iteration, the global
residual and Jacobian into which well source terms are summed, a global
reduction primitive and a surface-to-reservoir rate converter.
"""

import logging
import typing

import attrs
import numpy as np
from scipy.sparse import csr_matrix, lil_matrix  # type: ignore[import-untyped]

from wellmodel.errors import ValidationError
from wellmodel.types import PhaseUsage

logger = logging.getLogger(__name__)

__all__ = [
    "ReservoirState",
    "ReservoirSystem",
    "Communicator",
    "SerialCommunicator",
    "RateConverter",
    "FieldRateConverter",
]


def _as_float_array(value: typing.Any) -> np.ndarray:
    return np.asarray(value, dtype=np.float64)


@attrs.define(eq=False)
class ReservoirState:
    """
    Per-cell fluid state for one Newton iteration.

    Reservoir primary variables are ordered per cell with the pressure at
    `pressure_variable_index`. Derivatives are taken with respect to these
    `num_eq` variables of the same cell.
    """

    pressure: np.ndarray = attrs.field(converter=_as_float_array)
    """Cell pressures (Pa)."""
    mobility: np.ndarray = attrs.field(converter=_as_float_array)
    """Phase mobilities (kr / mu), shape (num_cells, num_phases)."""
    inv_b: np.ndarray = attrs.field(converter=_as_float_array)
    """Inverse formation volume factors (surface volume per reservoir volume)."""
    surface_density: np.ndarray = attrs.field(converter=_as_float_array)
    """Phase densities at surface conditions (kg/m³), one per active phase."""
    depth: typing.Optional[np.ndarray] = attrs.field(
        default=None, converter=attrs.converters.optional(_as_float_array)
    )
    """Cell centre depths (m, positive downwards)."""
    pore_volume: typing.Optional[np.ndarray] = attrs.field(
        default=None, converter=attrs.converters.optional(_as_float_array)
    )
    """Cell pore volumes (m³)."""
    interior: typing.Optional[np.ndarray] = None
    """Mask of cells owned by this process. All cells when not given."""
    mobility_derivatives: typing.Optional[np.ndarray] = None
    """Derivatives of `mobility`, shape (num_cells, num_phases, num_eq)."""
    inv_b_derivatives: typing.Optional[np.ndarray] = None
    """Derivatives of `inv_b`, shape (num_cells, num_phases, num_eq)."""
    pressure_variable_index: int = 0
    """Position of the pressure among the reservoir primary variables."""

    def __attrs_post_init__(self) -> None:
        num_cells = self.pressure.shape[0]
        if self.mobility.ndim != 2 or self.mobility.shape[0] != num_cells:
            raise ValidationError(
                f"Mobility must have shape (num_cells, num_phases), got {self.mobility.shape}."
            )
        if self.inv_b.shape != self.mobility.shape:
            raise ValidationError(
                f"Inverse formation volume factors must have shape {self.mobility.shape}, got {self.inv_b.shape}."
            )
        if self.surface_density.shape != (self.num_phases,):
            raise ValidationError(
                f"Surface densities must have shape ({self.num_phases},), got {self.surface_density.shape}."
            )
        if self.interior is None:
            self.interior = np.ones(num_cells, dtype=bool)
        else:
            self.interior = np.asarray(self.interior, dtype=bool)
        if self.mobility_derivatives is None:
            self.mobility_derivatives = np.zeros((num_cells, self.num_phases, self.num_eq))
        if self.inv_b_derivatives is None:
            self.inv_b_derivatives = np.zeros((num_cells, self.num_phases, self.num_eq))

    @property
    def num_cells(self) -> int:
        return self.pressure.shape[0]

    @property
    def num_phases(self) -> int:
        return self.mobility.shape[1]

    @property
    def num_eq(self) -> int:
        """Number of conservation equations (and primary variables) per cell."""
        return self.num_phases


class ReservoirSystem:
    """
    Global reservoir residual and Jacobian, block-ordered per cell.

    Row `cell * num_eq + eq` holds conservation equation `eq` of `cell`.
    """

    def __init__(
        self,
        num_cells: int,
        num_eq: int,
        residual: typing.Optional[np.ndarray] = None,
        jacobian: typing.Optional[typing.Any] = None,
    ) -> None:
        size = num_cells * num_eq
        self.num_cells = num_cells
        self.num_eq = num_eq
        self.residual = (
            np.zeros(size, dtype=np.float64)
            if residual is None
            else np.asarray(residual, dtype=np.float64)
        )
        self.jacobian = (
            lil_matrix((size, size), dtype=np.float64)
            if jacobian is None
            else lil_matrix(jacobian, dtype=np.float64)
        )
        if self.residual.shape != (size,) or self.jacobian.shape != (size, size):
            raise ValidationError(
                f"Reservoir system of {num_cells} cells with {num_eq} equations needs "
                f"a residual of size {size} and a {size}x{size} Jacobian."
            )

    def add_residual(self, cell: int, values: np.ndarray) -> None:
        start = cell * self.num_eq
        self.residual[start : start + self.num_eq] += values

    def add_jacobian_block(self, row_cell: int, col_cell: int, block: np.ndarray) -> None:
        row = row_cell * self.num_eq
        col = col_cell * self.num_eq
        for i in range(self.num_eq):
            for j in range(self.num_eq):
                if block[i, j] != 0.0:
                    self.jacobian[row + i, col + j] += block[i, j]

    def jacobian_csr(self) -> csr_matrix:
        return csr_matrix(self.jacobian)


@typing.runtime_checkable
class Communicator(typing.Protocol):
    """Global reduction primitive across simulator processes."""

    @property
    def size(self) -> int:
        """Number of processes."""
        ...

    def sum(self, value: typing.Any) -> typing.Any:
        """
        Sum a scalar or array over all processes.

        Every process must call this, also processes without local wells.

        :param value: Local contribution.
        :return: The global sum, with the same shape as `value`.
        """
        ...


class SerialCommunicator:
    """Communicator for a single process run."""

    @property
    def size(self) -> int:
        return 1

    def sum(self, value: typing.Any) -> typing.Any:
        if np.isscalar(value):
            return value
        return np.array(value, copy=True)


@typing.runtime_checkable
class RateConverter(typing.Protocol):
    """Converts surface rates to reservoir voidage rates."""

    def calc_coeff(self, region: int = 0) -> np.ndarray:
        """
        Surface to reservoir conversion coefficients.

        :param region: Fluid-in-place region.
        :return: Reservoir volume per surface volume, one per active phase.
        """
        ...


class FieldRateConverter:
    """
    Rate converter using field averaged formation volume factors.

    The averages are pore volume weighted over the interior cells of all processes.
    """

    def __init__(
        self,
        phase_usage: PhaseUsage,
        communicator: typing.Optional[Communicator] = None,
    ) -> None:
        self.phase_usage = phase_usage
        self.communicator = communicator or SerialCommunicator()
        self._coefficients = np.ones(phase_usage.num_phases, dtype=np.float64)

    def define_state(self, reservoir: ReservoirState) -> None:
        """
        Recompute the average formation volume factors.

        :param reservoir: Current reservoir state.
        """
        interior = typing.cast(np.ndarray, reservoir.interior)
        pore_volume = (
            reservoir.pore_volume
            if reservoir.pore_volume is not None
            else np.ones(reservoir.num_cells)
        )
        weights = pore_volume[interior]
        local = np.zeros(self.phase_usage.num_phases + 1, dtype=np.float64)
        local[:-1] = weights @ (1.0 / reservoir.inv_b[interior])
        local[-1] = weights.sum()
        total = np.asarray(self.communicator.sum(local), dtype=np.float64)
        if total[-1] <= 0.0:
            logger.warning("No pore volume to average formation volume factors over")
            return
        self._coefficients = total[:-1] / total[-1]
        logger.debug(f"Field average formation volume factors: {self._coefficients}")

    def calc_coeff(self, region: int = 0) -> np.ndarray:
        return self._coefficients.copy()
