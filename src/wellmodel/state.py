import logging
import typing

import attrs
import numpy as np
from typing_extensions import Self

from wellmodel.controls import BHPControl
from wellmodel.errors import ValidationError
from wellmodel.types import Phase, PhaseUsage
from wellmodel.wells import Wells

logger = logging.getLogger(__name__)

__all__ = ["WellState"]

WellMapEntry = typing.Tuple[int, int, int]
"""(well index, first perforation index, number of perforations)"""

_STATE_ARRAYS = (
    "bhp",
    "thp",
    "well_rates",
    "perf_phase_rates",
    "perf_pressures",
    "current_controls",
    "is_new_well",
    "well_solutions",
)


@attrs.define(eq=False)
class WellState:
    """
    Mutable state of all wells of the topology.

    Per-well arrays are indexed by the position of the well in `Wells`,
    per-perforation arrays by the global perforation index.

    `well_solutions` holds the well primary variables in variable-major order,
    `well_solutions[var * num_wells + w]`, with `num_phases + 1` variables per
    well: the total rate, one fraction per active non-oil phase and the
    bottom-hole pressure (mirrored from `bhp`).
    """

    bhp: np.ndarray
    """Bottom-hole pressure per well (Pa)."""
    thp: np.ndarray
    """Tubing-head pressure per well (Pa)."""
    well_rates: np.ndarray
    """Surface rates, shape (num_wells, num_phases). Production is negative."""
    perf_phase_rates: np.ndarray
    """Surface rates per perforation, shape (num_perforations, num_phases)."""
    perf_pressures: np.ndarray
    """Pressure in the wellbore at each perforation (Pa)."""
    current_controls: np.ndarray
    """Index of the enforced control per well."""
    is_new_well: np.ndarray
    """Whether the well was added at the start of the current timestep."""
    well_solutions: np.ndarray
    """Well primary variables, variable-major."""
    well_map: typing.Dict[str, WellMapEntry] = attrs.field(factory=dict)
    """Well name to (index, first perforation, number of perforations)."""

    @classmethod
    def initialize(
        cls,
        wells: Wells,
        phase_usage: PhaseUsage,
        cell_pressures: typing.Optional[np.ndarray] = None,
    ) -> Self:
        """
        Build an initial state for a well topology.

        BHP-controlled wells start at their target, other wells start slightly
        below (producers) or above (injectors) the pressure of their first
        perforated cell. Rates start at zero.

        :param wells: The well topology.
        :param phase_usage: Active phases.
        :param cell_pressures: Reservoir cell pressures (Pa).
        :return: The initial `WellState`.
        """
        num_wells = len(wells)
        num_phases = phase_usage.num_phases
        num_perforations = wells.number_of_perforations
        bhp = np.zeros(num_wells, dtype=np.float64)
        current_controls = np.zeros(num_wells, dtype=np.int64)
        well_map: typing.Dict[str, WellMapEntry] = {}
        well_solutions = np.zeros((num_phases + 1) * num_wells, dtype=np.float64)
        oil_position = phase_usage.position(Phase.OIL)

        for w, well in enumerate(wells):
            first = int(wells.connection_offsets[w])
            well_map[well.name] = (w, first, well.number_of_perforations)
            current_controls[w] = well.controls.current
            control = well.controls.current_control
            if isinstance(control, BHPControl):
                bhp[w] = control.value
            elif cell_pressures is not None and well.number_of_perforations > 0:
                pressure = float(cell_pressures[well.perforations[0].cell])
                bhp[w] = pressure * (1.01 if well.is_injector else 0.99)

            if well.is_injector and well.composition is not None:
                fractions = np.asarray(well.composition, dtype=np.float64)
            else:
                fractions = np.full(num_phases, 1.0 / num_phases)
            var = 1
            for position in range(num_phases):
                if position == oil_position:
                    continue
                well_solutions[var * num_wells + w] = fractions[position]
                var += 1
            well_solutions[num_phases * num_wells + w] = bhp[w]

        perf_pressures = np.zeros(num_perforations, dtype=np.float64)
        for w in range(num_wells):
            start, end = wells.connection_offsets[w], wells.connection_offsets[w + 1]
            perf_pressures[start:end] = bhp[w]

        return cls(
            bhp=bhp,
            thp=np.zeros(num_wells, dtype=np.float64),
            well_rates=np.zeros((num_wells, num_phases), dtype=np.float64),
            perf_phase_rates=np.zeros((num_perforations, num_phases), dtype=np.float64),
            perf_pressures=perf_pressures,
            current_controls=current_controls,
            is_new_well=np.ones(num_wells, dtype=bool),
            well_solutions=well_solutions,
            well_map=well_map,
        )

    @property
    def num_wells(self) -> int:
        return self.bhp.shape[0]

    @property
    def num_phases(self) -> int:
        return self.well_rates.shape[1]

    @property
    def num_well_eq(self) -> int:
        return self.num_phases + 1

    def solution(self, var: int, well_index: int) -> float:
        return float(self.well_solutions[var * self.num_wells + well_index])

    def set_solution(self, var: int, well_index: int, value: float) -> None:
        self.well_solutions[var * self.num_wells + well_index] = value

    def well_solution_vector(self, well_index: int) -> np.ndarray:
        """All primary variables of one well, in variable order."""
        return self.well_solutions[well_index :: self.num_wells].copy()

    def copy(self) -> Self:
        """Deep copy of the state."""
        return type(self)(
            bhp=self.bhp.copy(),
            thp=self.thp.copy(),
            well_rates=self.well_rates.copy(),
            perf_phase_rates=self.perf_phase_rates.copy(),
            perf_pressures=self.perf_pressures.copy(),
            current_controls=self.current_controls.copy(),
            is_new_well=self.is_new_well.copy(),
            well_solutions=self.well_solutions.copy(),
            well_map=dict(self.well_map),
        )

    def restore(self, other: "WellState") -> None:
        """
        Overwrite this state in place with the values of `other`.

        :param other: A state of the same topology, typically a snapshot from `copy()`.
        :raises ValidationError: If the array shapes differ.
        """
        for name in _STATE_ARRAYS:
            target = getattr(self, name)
            source = getattr(other, name)
            if target.shape != source.shape:
                raise ValidationError(
                    f"Cannot restore well state, {name} has shape {source.shape}, expected {target.shape}."
                )
            target[...] = source
        self.well_map = dict(other.well_map)

    def equals(self, other: "WellState") -> bool:
        """Exact (bitwise) equality of all state arrays."""
        return all(
            np.array_equal(getattr(self, name), getattr(other, name))
            for name in _STATE_ARRAYS
        ) and self.well_map == other.well_map
