"""
Standard (single-segment) well.

A `StandardWell` owns the nonlinear equations of one well: one mass balance
per active phase plus one control equation, in the primary variables

    [G_total, F_water (if active), F_gas (if active), BHP]

where `G_total` is the scaled total surface rate and the `F` are scaled
volume fractions. The oil fraction is `1 - sum(F)`. The surface rate of
phase `p` is `G_total * F_p / g_p`, with `g_p` the rate scaling of the phase.

Assembly produces the well residual and the blocks of the coupled system

    | A   C^T | | x_res  |   | r_res  |
    | B   D   | | x_well | = | r_well |

which are used to eliminate the well unknowns through the Schur complement
`A - C^T D^-1 B`.
"""

import logging
import typing

import numba
import numpy as np

from wellmodel.autodiff import Evaluation
from wellmodel.config import Config
from wellmodel.constants import c
from wellmodel.controls import (
    BHPControl,
    ControlType,
    ReservoirRateControl,
    SurfaceRateControl,
    THPControl,
    WellControl,
    constraint_broken,
)
from wellmodel.errors import (
    ComputationError,
    UnsupportedConfigurationError,
    ValidationError,
)
from wellmodel.types import Phase, PhaseUsage, WellStatus, WellType

if typing.TYPE_CHECKING:
    from wellmodel.geometry import PerforationGeometry
    from wellmodel.groups import WellCollection
    from wellmodel.reservoir import ReservoirState, ReservoirSystem
    from wellmodel.state import WellState
    from wellmodel.vfp import VFPProperties
    from wellmodel.wells import ScheduleWell, WellDefinition

logger = logging.getLogger(__name__)

__all__ = [
    "StandardWell",
    "compute_connection_densities",
    "compute_connection_pressure_deltas",
]

XVAR_WELL = 0
"""Index of the total rate among the well primary variables."""


@numba.njit(cache=True)
def compute_connection_densities(
    perf_rates: np.ndarray,
    inv_b: np.ndarray,
    surface_density: np.ndarray,
    fallback_mix: np.ndarray,
) -> np.ndarray:
    """
    Mixture density in the wellbore at each connection.

    The fluid passing a connection is the sum of the inflows of all
    connections below it. When nothing flows past a connection the
    `fallback_mix` composition is used instead.

    :param perf_rates: Surface rates per connection and phase (production negative).
    :param inv_b: Inverse formation volume factors per connection and phase.
    :param surface_density: Surface density per phase.
    :param fallback_mix: Surface volume fractions used where the flow is zero.
    :return: Mixture density per connection.
    """
    num_perfs, num_phases = perf_rates.shape
    densities = np.zeros(num_perfs)
    q_out = np.zeros(num_phases)
    for perf in range(num_perfs - 1, -1, -1):
        total = 0.0
        for p in range(num_phases):
            q_out[p] -= perf_rates[perf, p]
            total += abs(q_out[p])

        mass = 0.0
        volume = 0.0
        for p in range(num_phases):
            mix = q_out[p] if total > 0.0 else fallback_mix[p]
            mass += mix * surface_density[p]
            volume += mix / inv_b[perf, p]
        if volume != 0.0:
            densities[perf] = mass / volume
    return densities


@numba.njit(cache=True)
def compute_connection_pressure_deltas(
    perf_depths: np.ndarray,
    densities: np.ndarray,
    reference_depth: float,
    gravity: float,
) -> np.ndarray:
    """
    Hydrostatic pressure difference between the reference depth and each connection.

    :param perf_depths: Connection depths, top to bottom.
    :param densities: Wellbore mixture density at each connection.
    :param reference_depth: Depth at which the bottom-hole pressure is defined.
    :param gravity: Gravitational acceleration.
    :return: Cumulative pressure difference per connection.
    """
    num_perfs = perf_depths.shape[0]
    deltas = np.zeros(num_perfs)
    z_above = reference_depth
    cumulative = 0.0
    for perf in range(num_perfs):
        cumulative += (perf_depths[perf] - z_above) * densities[perf] * gravity
        deltas[perf] = cumulative
        z_above = perf_depths[perf]
    return deltas


def _limited(change: float, limit: float) -> float:
    return float(np.sign(change)) * min(abs(change), limit)


class StandardWell:
    """The equations, coupling blocks and state updates of one well."""

    def __init__(
        self,
        well: "WellDefinition",
        schedule_well: "ScheduleWell",
        index_of_well: int,
        first_perforation: int,
        config: Config,
    ) -> None:
        """
        :param well: Topology record of the well.
        :param schedule_well: Schedule record of the well for the current step.
        :param index_of_well: Position of the well in the topology and well state.
        :param first_perforation: Global index of the first perforation of the well.
        :param config: Simulator configuration.
        """
        if schedule_well.is_multisegment:
            raise UnsupportedConfigurationError(
                f"Well {well.name} is a multi-segment well, which is not supported"
            )
        if well.well_type not in (WellType.PRODUCER, WellType.INJECTOR):
            raise UnsupportedConfigurationError(
                f"Unrecognized type {well.well_type!r} of well {well.name}"
            )
        self.well = well
        self.schedule_well = schedule_well
        self.name = well.name
        self.well_type = well.well_type
        self.index_of_well = index_of_well
        self.first_perforation = first_perforation
        self.config = config
        self.params = config.well_model
        self.controls = well.controls

        self.number_of_perforations = well.number_of_perforations
        self.well_cells = np.array([perf.cell for perf in well.perforations], dtype=np.int64)
        self.connection_transmissibilities = np.array(
            [perf.transmissibility for perf in well.perforations], dtype=np.float64
        )
        self.perf_depths = np.array([perf.depth for perf in well.perforations], dtype=np.float64)
        self.reference_depth = well.reference_depth

        self.well_efficiency_factor = 1.0
        self.perf_efficiency_factors = np.ones(self.number_of_perforations, dtype=np.float64)
        self.perf_densities = np.zeros(self.number_of_perforations, dtype=np.float64)
        self.perf_pressure_diffs = np.zeros(self.number_of_perforations, dtype=np.float64)
        self.perforation_geometry: typing.Optional["PerforationGeometry"] = None

        self._initialized = False

    @property
    def status(self) -> WellStatus:
        return self.schedule_well.status

    @property
    def is_producer(self) -> bool:
        return self.well_type is WellType.PRODUCER

    @property
    def is_injector(self) -> bool:
        return self.well_type is WellType.INJECTOR

    @property
    def num_well_eq(self) -> int:
        return self.num_phases + 1

    @property
    def bhp_index(self) -> int:
        """Index of the bottom-hole pressure among the well primary variables."""
        return self.num_phases

    def init(
        self,
        phase_usage: PhaseUsage,
        vfp_properties: typing.Optional["VFPProperties"],
        gravity: float,
        num_cells: int,
    ) -> None:
        """
        Bind the shared context of the run.

        :param phase_usage: Active phases.
        :param vfp_properties: VFP tables, required by wells with THP controls.
        :param gravity: Gravitational acceleration.
        :param num_cells: Number of reservoir cells on this process.
        :raises UnsupportedConfigurationError: If the well has no perforations.
        """
        if self.number_of_perforations == 0:
            raise UnsupportedConfigurationError(
                f"Well {self.name} is open but has no perforations"
            )
        if np.any(self.well_cells >= num_cells):
            raise ValidationError(
                f"Well {self.name} perforates cells {self.well_cells[self.well_cells >= num_cells]} "
                f"outside the {num_cells} reservoir cells"
            )
        if self.controls.find(ControlType.THP) >= 0 and vfp_properties is None:
            raise UnsupportedConfigurationError(
                f"Well {self.name} has a THP control but no VFP tables are available"
            )

        self.phase_usage = phase_usage
        self.vfp_properties = vfp_properties
        self.gravity = gravity
        self.num_cells = num_cells
        self.num_phases = phase_usage.num_phases
        self.num_eq = self.num_phases
        self._num_derivatives = self.num_eq + self.num_well_eq

        self._surface_scaling = np.empty(self.num_phases, dtype=np.float64)
        rate_scalings = {
            Phase.WATER: c.WATER_RATE_SCALING,
            Phase.OIL: c.OIL_RATE_SCALING,
            Phase.GAS: c.GAS_RATE_SCALING,
        }
        for position, phase in enumerate(phase_usage.phases):
            self._surface_scaling[position] = rate_scalings[phase]

        # well primary variable holding the fraction of each non-oil phase
        self._oil_position = phase_usage.position(Phase.OIL)
        self._fraction_variables: typing.Dict[int, int] = {}
        var = 1
        for position in range(self.num_phases):
            if position != self._oil_position:
                self._fraction_variables[position] = var
                var += 1

        self.primary_variables = np.zeros(self.num_well_eq, dtype=np.float64)
        self.primary_variables_evaluation = [
            Evaluation.constant(0.0, self._num_derivatives) for _ in range(self.num_well_eq)
        ]
        self.F0 = np.zeros(self.num_phases, dtype=np.float64)
        self.residual_well = np.zeros(self.num_well_eq, dtype=np.float64)
        self.d_matrix = np.eye(self.num_well_eq, dtype=np.float64)
        self.inv_d = np.eye(self.num_well_eq, dtype=np.float64)
        self.b_blocks = np.zeros(
            (self.number_of_perforations, self.num_well_eq, self.num_eq), dtype=np.float64
        )
        self.c_blocks = np.zeros_like(self.b_blocks)
        self._initialized = True

    def set_well_efficiency_factor(self, factor: float) -> None:
        """Set the accumulated efficiency factor of the well and its connections."""
        self.well_efficiency_factor = factor
        self.perf_efficiency_factors[:] = factor

    def set_perforation_geometry(self, geometry: "PerforationGeometry") -> None:
        if geometry.cells.shape[0] != self.number_of_perforations:
            logger.warning(
                f"Well {self.name} has {self.number_of_perforations} perforations but "
                f"{geometry.cells.shape[0]} open completions in the grid"
            )
        self.perforation_geometry = geometry

    def scaling_factor(self, position: int, control: typing.Optional[WellControl] = None) -> float:
        """
        Rate scaling `g_p` of a phase.

        Under reservoir rate control the conversion coefficients of the control
        are used, so that `G_total` is the reservoir voidage rate.

        :param position: Active position of the phase.
        :param control: Control to scale for, the current control when not given.
        :return: The scaling factor.
        """
        control = control if control is not None else self.controls.current_control
        if isinstance(control, ReservoirRateControl):
            distribution = control.distribution[position]
            return distribution if distribution != 0.0 else 1.0
        return float(self._surface_scaling[position])

    def set_well_variables(self, well_state: "WellState") -> None:
        """Copy the well primary variables from the state and seed their derivatives."""
        for var in range(self.num_well_eq):
            value = well_state.solution(var, self.index_of_well)
            self.primary_variables[var] = value
            self.primary_variables_evaluation[var] = Evaluation.variable(
                value, self.num_eq + var, self._num_derivatives
            )

    def well_volume_fraction(self, position: int) -> Evaluation:
        if position == self._oil_position:
            fraction = Evaluation.constant(1.0, self._num_derivatives)
            for var in self._fraction_variables.values():
                fraction = fraction - self.primary_variables_evaluation[var]
            return fraction
        return self.primary_variables_evaluation[self._fraction_variables[position]]

    def well_volume_fraction_scaled(self, position: int) -> Evaluation:
        return self.well_volume_fraction(position) / self.scaling_factor(position)

    def well_surface_volume_fraction(self, position: int) -> Evaluation:
        """Surface volume fraction of a phase in the wellbore mixture."""
        total = Evaluation.constant(0.0, self._num_derivatives)
        for p in range(self.num_phases):
            total = total + self.well_volume_fraction_scaled(p)
        return self.well_volume_fraction_scaled(position) / total

    def get_qs(self, position: int) -> Evaluation:
        """Surface rate of a phase, `G_total * F_p / g_p`."""
        return self.primary_variables_evaluation[XVAR_WELL] * self.well_volume_fraction_scaled(
            position
        )

    def get_bhp(self) -> Evaluation:
        return self.primary_variables_evaluation[self.bhp_index]

    def compute_accum_well(self) -> None:
        """Store the well mixture at the start of the step for the accumulation term."""
        for position in range(self.num_phases):
            self.F0[position] = self.well_surface_volume_fraction(position).value

    def _reservoir_evaluation(self, value: float, derivatives: np.ndarray) -> Evaluation:
        full = np.zeros(self._num_derivatives, dtype=np.float64)
        full[: self.num_eq] = derivatives
        return Evaluation(value, full)

    def compute_perf_rate(
        self, reservoir: "ReservoirState", perf: int, bhp: Evaluation
    ) -> typing.List[Evaluation]:
        """
        Surface rates of all phases through one connection.

        Inflow uses the phase mobilities of the cell. Injection uses the total
        mobility of the cell and the wellbore mixture. Connections flowing
        against the well type carry no flow when crossflow is not allowed.

        :param reservoir: Reservoir state of the current iteration.
        :param perf: Local perforation index.
        :param bhp: Bottom-hole pressure of the well.
        :return: Surface rate per active phase (production negative).
        """
        cell = int(self.well_cells[perf])
        size = self._num_derivatives
        pressure_derivatives = np.zeros(self.num_eq, dtype=np.float64)
        pressure_derivatives[reservoir.pressure_variable_index] = 1.0
        pressure = self._reservoir_evaluation(reservoir.pressure[cell], pressure_derivatives)
        mobility_derivatives = typing.cast(np.ndarray, reservoir.mobility_derivatives)
        inv_b_derivatives = typing.cast(np.ndarray, reservoir.inv_b_derivatives)
        mobility = [
            self._reservoir_evaluation(reservoir.mobility[cell, p], mobility_derivatives[cell, p])
            for p in range(self.num_phases)
        ]
        inv_b = [
            self._reservoir_evaluation(reservoir.inv_b[cell, p], inv_b_derivatives[cell, p])
            for p in range(self.num_phases)
        ]

        drawdown = pressure - (bhp + self.perf_pressure_diffs[perf])
        transmissibility = float(self.connection_transmissibilities[perf])
        no_flow = [Evaluation.constant(0.0, size) for _ in range(self.num_phases)]

        if drawdown > 0.0:
            if not self.well.allow_crossflow and self.is_injector:
                return no_flow
            return [
                -transmissibility * mobility[p] * inv_b[p] * drawdown
                for p in range(self.num_phases)
            ]

        if not self.well.allow_crossflow and self.is_producer:
            return no_flow
        total_mobility = Evaluation.constant(0.0, size)
        for p in range(self.num_phases):
            total_mobility = total_mobility + mobility[p]
        total_rate = -transmissibility * total_mobility * drawdown
        mixture = [self.well_surface_volume_fraction(p) for p in range(self.num_phases)]
        volume_ratio = Evaluation.constant(0.0, size)
        for p in range(self.num_phases):
            volume_ratio = volume_ratio + mixture[p] / inv_b[p]
        return [mixture[p] * total_rate / volume_ratio for p in range(self.num_phases)]

    def _vfp_rates(self, rates: typing.Sequence[typing.Any]) -> typing.Tuple[typing.Any, typing.Any, typing.Any]:
        """Split per-phase rates into (aqua, liquid, vapour), zero for inactive phases."""
        values = []
        for phase in (Phase.WATER, Phase.OIL, Phase.GAS):
            position = self.phase_usage.position(phase)
            values.append(rates[position] if position >= 0 else 0.0)
        return values[0], values[1], values[2]

    def vfp_hydrostatic_correction(self, table_id: int) -> float:
        """
        Pressure difference between the VFP table datum and the well reference depth.

        Uses the mixture density at the top connection.
        """
        vfp_properties = typing.cast("VFPProperties", self.vfp_properties)
        datum_depth = vfp_properties.datum_depth(table_id)
        rho = float(self.perf_densities[0]) if self.number_of_perforations else 0.0
        return (datum_depth - self.reference_depth) * rho * self.gravity

    def _vfp_bhp_evaluation(self, control: THPControl) -> Evaluation:
        vfp_properties = typing.cast("VFPProperties", self.vfp_properties)
        table = vfp_properties.get_table(control.vfp_table)
        rates = [self.get_qs(p) for p in range(self.num_phases)]
        rate_values = np.array([rate.value for rate in rates])
        aqua, liquid, vapour = self._vfp_rates(rate_values)
        value = table.bhp(aqua, liquid, vapour, control.value, control.alq)

        # rate derivatives of the table by central differences
        derivatives = np.zeros(self._num_derivatives, dtype=np.float64)
        for p in range(self.num_phases):
            step = 1e-6 * max(abs(rate_values[p]), 1e-3)
            upper = rate_values.copy()
            lower = rate_values.copy()
            upper[p] += step
            lower[p] -= step
            dbhp = (
                table.bhp(*self._vfp_rates(upper), control.value, control.alq)
                - table.bhp(*self._vfp_rates(lower), control.value, control.alq)
            ) / (2.0 * step)
            derivatives += dbhp * rates[p].derivatives
        return Evaluation(value, derivatives)

    def _control_equation(self) -> Evaluation:
        if self.status is WellStatus.STOPPED:
            return self.primary_variables_evaluation[XVAR_WELL]

        control = self.controls.current_control
        bhp = self.get_bhp()
        if isinstance(control, BHPControl):
            return bhp - control.value
        if isinstance(control, THPControl):
            dp = self.vfp_hydrostatic_correction(control.vfp_table)
            return bhp - (self._vfp_bhp_evaluation(control) - dp)
        if isinstance(control, (SurfaceRateControl, ReservoirRateControl)):
            rate = Evaluation.constant(0.0, self._num_derivatives)
            for position, distribution in enumerate(control.distribution):
                if distribution != 0.0:
                    rate = rate + distribution * self.get_qs(position)
            return rate - control.value
        raise UnsupportedConfigurationError(
            f"Well {self.name} has no valid control (current index {self.controls.current})"
        )

    def assemble_well_eq(
        self,
        reservoir: "ReservoirState",
        dt: float,
        well_state: "WellState",
        only_wells: bool,
        system: typing.Optional["ReservoirSystem"] = None,
    ) -> None:
        """
        Assemble the well residual and the coupling blocks.

        :param reservoir: Reservoir state of the current iteration.
        :param dt: Timestep size (s).
        :param well_state: Well state, receives the connection rates and pressures.
        :param only_wells: Skip the contributions to the reservoir equations.
        :param system: Reservoir residual and Jacobian receiving the well source terms.
        """
        num_eq = self.num_eq
        size = self._num_derivatives
        self.b_blocks[...] = 0.0
        self.c_blocks[...] = 0.0
        component_residuals = [Evaluation.constant(0.0, size) for _ in range(self.num_phases)]
        bhp = self.get_bhp()

        for perf in range(self.number_of_perforations):
            cell = int(self.well_cells[perf])
            cq = self.compute_perf_rate(reservoir, perf, bhp)
            reservoir_block = np.zeros((num_eq, num_eq), dtype=np.float64)
            for comp in range(self.num_phases):
                cq_effective = cq[comp] * self.perf_efficiency_factors[perf]
                component_residuals[comp] = component_residuals[comp] - cq_effective
                self.b_blocks[perf, comp, :] = -cq_effective.derivatives[:num_eq]
                self.c_blocks[perf, :, comp] = -cq_effective.derivatives[num_eq:]
                reservoir_block[comp, :] = -cq_effective.derivatives[:num_eq]
                if not only_wells and system is not None:
                    system.residual[cell * num_eq + comp] -= cq_effective.value

                well_state.perf_phase_rates[self.first_perforation + perf, comp] = cq[comp].value

            if not only_wells and system is not None:
                system.add_jacobian_block(cell, cell, reservoir_block)
            well_state.perf_pressures[self.first_perforation + perf] = (
                bhp.value + self.perf_pressure_diffs[perf]
            )

        volume = c.WELL_ACCUMULATION_VOLUME
        for comp in range(self.num_phases):
            accumulation = (self.well_surface_volume_fraction(comp) - self.F0[comp]) * (volume / dt)
            residual = (
                component_residuals[comp]
                + accumulation
                + self.get_qs(comp) * self.well_efficiency_factor
            )
            self.residual_well[comp] = residual.value
            self.d_matrix[comp, :] = residual.derivatives[num_eq:]

        control_equation = self._control_equation()
        self.residual_well[self.bhp_index] = control_equation.value
        self.d_matrix[self.bhp_index, :] = control_equation.derivatives[num_eq:]

        try:
            self.inv_d = np.linalg.inv(self.d_matrix)
        except np.linalg.LinAlgError as exc:
            logger.error(f"Jacobian of well {self.name} is singular")
            raise ComputationError(f"Jacobian of well {self.name} is singular") from exc

    def _cell_blocks(self, x: np.ndarray) -> np.ndarray:
        return np.asarray(x).reshape(-1, self.num_eq)[self.well_cells]

    def _blocked_view(self, vector: np.ndarray) -> np.ndarray:
        if not vector.flags.c_contiguous:
            raise ValidationError(
                f"Well {self.name} can only update C-contiguous reservoir vectors in place"
            )
        return vector.reshape(-1, self.num_eq)

    def apply(self, x: np.ndarray, Ax: np.ndarray) -> None:
        """
        Subtract the Schur complement contribution of the well, `Ax -= C^T D^-1 B x`.

        :param x: Reservoir vector.
        :param Ax: Reservoir vector updated in place.
        """
        bx = np.einsum("kij,kj->i", self.b_blocks, self._cell_blocks(x))
        inv_d_bx = self.inv_d @ bx
        contribution = np.einsum("kij,i->kj", self.c_blocks, inv_d_bx)
        np.subtract.at(self._blocked_view(Ax), self.well_cells, contribution)

    def apply_to_residual(self, r: np.ndarray) -> None:
        """Eliminate the well residual from a reservoir residual, `r -= C^T D^-1 r_well`."""
        inv_d_res = self.inv_d @ self.residual_well
        contribution = np.einsum("kij,i->kj", self.c_blocks, inv_d_res)
        np.subtract.at(self._blocked_view(r), self.well_cells, contribution)

    def schur_blocks(self) -> typing.Iterator[typing.Tuple[int, int, np.ndarray]]:
        """
        Blocks of `C^T D^-1 B` per pair of perforated cells.

        :return: Iterator of (row cell, column cell, num_eq x num_eq block).
        """
        for k1 in range(self.number_of_perforations):
            ct_inv_d = self.c_blocks[k1].T @ self.inv_d
            for k2 in range(self.number_of_perforations):
                yield int(self.well_cells[k1]), int(self.well_cells[k2]), ct_inv_d @ self.b_blocks[k2]

    def recover_well_solution_and_update_well_state(
        self, x: np.ndarray, well_state: "WellState"
    ) -> None:
        """
        Recover the well update from a reservoir update and apply it.

        :param x: Reservoir update.
        :param well_state: Well state updated in place.
        """
        bx = np.einsum("kij,kj->i", self.b_blocks, self._cell_blocks(x))
        dx_well = self.inv_d @ (self.residual_well - bx)
        self.update_well_state(dx_well, well_state)

    def well_eq_iteration(self, well_state: "WellState") -> None:
        """One Newton step on the well equations alone."""
        dx_well = self.inv_d @ self.residual_well
        self.update_well_state(dx_well, well_state)

    def update_well_state(self, dx_well: np.ndarray, well_state: "WellState") -> None:
        """
        Apply a Newton update `x -= dx` to the well primary variables.

        Fraction changes are limited to `dwell_fraction_max`, bottom-hole
        pressure changes to `dbhp_max_rel` of the old value. Negative fractions
        are removed by renormalising the others, and the bottom-hole pressure is
        kept above `MINIMUM_BHP`. Rates and, for wells with a THP control, the
        tubing-head pressure are recomputed from the new variables.

        :param dx_well: Update of the well primary variables.
        :param well_state: Well state updated in place.
        """
        w = self.index_of_well
        old = well_state.well_solution_vector(w)

        total_rate = old[XVAR_WELL] - dx_well[XVAR_WELL]
        fractions = np.zeros(self.num_phases, dtype=np.float64)
        for position, var in self._fraction_variables.items():
            fractions[position] = old[var] - _limited(
                dx_well[var], self.params.dwell_fraction_max
            )
        fractions[self._oil_position] = 1.0 - fractions.sum()

        for phase in (Phase.WATER, Phase.GAS, Phase.OIL):
            position = self.phase_usage.position(phase)
            if position < 0 or fractions[position] >= 0.0:
                continue
            others = np.arange(self.num_phases) != position
            fractions[others] /= 1.0 - fractions[position]
            fractions[position] = 0.0

        old_bhp = old[self.bhp_index]
        bhp = old_bhp - _limited(dx_well[self.bhp_index], abs(old_bhp) * self.params.dbhp_max_rel)
        bhp = max(bhp, c.MINIMUM_BHP)

        well_state.set_solution(XVAR_WELL, w, total_rate)
        for position, var in self._fraction_variables.items():
            well_state.set_solution(var, w, fractions[position])
        well_state.set_solution(self.bhp_index, w, bhp)
        well_state.bhp[w] = bhp

        for position in range(self.num_phases):
            well_state.well_rates[w, position] = (
                total_rate * fractions[position] / self.scaling_factor(position)
            )

        self._update_thp(well_state)

    def _update_thp(self, well_state: "WellState") -> None:
        thp_index = self.controls.find(ControlType.THP)
        if thp_index < 0:
            return
        w = self.index_of_well
        control = typing.cast(THPControl, self.controls[thp_index])
        if well_state.current_controls[w] == thp_index:
            well_state.thp[w] = control.value
            return
        vfp_properties = typing.cast("VFPProperties", self.vfp_properties)
        dp = self.vfp_hydrostatic_correction(control.vfp_table)
        aqua, liquid, vapour = self._vfp_rates(well_state.well_rates[w])
        well_state.thp[w] = vfp_properties.thp(
            control.vfp_table, aqua, liquid, vapour, well_state.bhp[w] + dp, control.alq
        )

    def get_well_convergence(self, b_avg: np.ndarray) -> bool:
        """
        Check the convergence of the well equations.

        A mass balance equation converges when its residual normalised by the
        average formation volume factor is below `tolerance_wells`, or when the
        unscaled residual is below `residual_floor`. The control equation is
        normalised by its target and checked against `tolerance_well_control`.

        :param b_avg: Average formation volume factor per active phase.
        :return: True if all equations of the well converged.
        :raises ComputationError: If a residual is not finite or too large.
        """
        params = self.params
        converged = True
        for comp in range(self.num_phases):
            residual = abs(self.residual_well[comp])
            if not np.isfinite(residual):
                logger.error(f"Non-finite residual for phase {comp} of well {self.name}")
                raise ComputationError(
                    f"Non-finite residual for phase {comp} of well {self.name}"
                )
            if residual > params.max_residual_allowed:
                logger.error(f"Too large residual {residual:.6e} for phase {comp} of well {self.name}")
                raise ComputationError(
                    f"Too large residual {residual:.6e} for phase {comp} of well {self.name}"
                )
            if not (residual / b_avg[comp] < params.tolerance_wells or residual < params.residual_floor):
                converged = False

        control_residual = abs(self.residual_well[self.bhp_index])
        if not np.isfinite(control_residual):
            logger.error(f"Non-finite control equation residual of well {self.name}")
            raise ComputationError(f"Non-finite control equation residual of well {self.name}")
        control = self.controls.current_control
        target = abs(control.value) if control is not None and self.status is not WellStatus.STOPPED else 0.0
        scale = target if target != 0.0 else 1.0
        if not control_residual / scale < params.tolerance_well_control:
            converged = False
        return converged

    def update_well_state_with_target(self, control_index: int, well_state: "WellState") -> None:
        """
        Project the target of a control into the well state.

        BHP and THP controls set the pressures, rate controls rescale the well
        rates to the target. The primary variables are then rebuilt so that
        `G_total * F_p / g_p` reproduces the well rates.

        :param control_index: Index of the control to project.
        :param well_state: Well state updated in place.
        """
        w = self.index_of_well
        if not 0 <= control_index < len(self.controls):
            raise UnsupportedConfigurationError(
                f"Control index {control_index} of well {self.name} is out of range"
            )
        control = self.controls[control_index]
        rates = well_state.well_rates[w]

        if isinstance(control, BHPControl):
            well_state.bhp[w] = control.value
        elif isinstance(control, THPControl):
            well_state.thp[w] = control.value
            vfp_properties = typing.cast("VFPProperties", self.vfp_properties)
            dp = self.vfp_hydrostatic_correction(control.vfp_table)
            aqua, liquid, vapour = self._vfp_rates(rates)
            well_state.bhp[w] = (
                vfp_properties.bhp(control.vfp_table, aqua, liquid, vapour, control.value, control.alq)
                - dp
            )
        elif isinstance(control, (SurfaceRateControl, ReservoirRateControl)):
            distribution = np.asarray(control.distribution, dtype=np.float64)
            if self.is_injector:
                for position in range(self.num_phases):
                    if distribution[position] > 0.0:
                        rates[position] = control.value / distribution[position]
                    else:
                        rates[position] = 0.0
            else:
                controlled = distribution > 0.0
                current_rate = float(np.dot(distribution[controlled], rates[controlled]))
                if current_rate != 0.0:
                    rates *= control.value / current_rate
                else:
                    target_divided = control.value / max(int(controlled.sum()), 1)
                    for position in range(self.num_phases):
                        if controlled[position]:
                            rates[position] = target_divided / distribution[position]
                        else:
                            rates[position] = target_divided
        else:
            raise UnsupportedConfigurationError(
                f"Unknown control {control!r} of well {self.name}"
            )

        scalings = np.array(
            [self.scaling_factor(p, control) for p in range(self.num_phases)], dtype=np.float64
        )
        total = float(np.dot(scalings, rates))
        if total != 0.0:
            fractions = scalings * rates / total
        elif self.is_injector and self.well.composition is not None:
            fractions = np.asarray(self.well.composition, dtype=np.float64)
        elif self.is_injector and isinstance(control, (SurfaceRateControl, ReservoirRateControl)):
            injected = np.asarray(control.distribution, dtype=np.float64) > 0.0
            fractions = injected / max(int(injected.sum()), 1)
        else:
            fractions = np.full(self.num_phases, 1.0 / self.num_phases)

        well_state.set_solution(XVAR_WELL, w, total)
        for position, var in self._fraction_variables.items():
            well_state.set_solution(var, w, fractions[position])
        well_state.set_solution(self.bhp_index, w, well_state.bhp[w])

    def update_well_control(
        self,
        well_state: "WellState",
        collection: typing.Optional["WellCollection"] = None,
    ) -> typing.Optional[typing.Tuple[int, int]]:
        """
        Switch to the first violated constraint and project the enforced target.

        Injectors locked under voidage replacement group control never switch.

        :param well_state: Well state updated in place.
        :param collection: Group hierarchy, whose well node follows the enforced control.
        :return: (old, new) control indices if the control was switched, else None.
        """
        w = self.index_of_well
        current = int(well_state.current_controls[w])
        if current < 0:
            raise UnsupportedConfigurationError(f"Well {self.name} has no control selected")
        node = collection.find_well_node(self.name) if collection is not None else None
        locked = node is not None and node.vrep_controlled and not node.individual_control

        switched: typing.Optional[typing.Tuple[int, int]] = None
        if not locked:
            for index, control in enumerate(self.controls):
                if index == current:
                    continue
                if constraint_broken(
                    control,
                    self.well_type,
                    float(well_state.bhp[w]),
                    float(well_state.thp[w]),
                    well_state.well_rates[w],
                ):
                    switched = (current, index)
                    current = index
                    break

        if switched is not None:
            well_state.current_controls[w] = current
            self.controls.current = current
            logger.debug(f"Well {self.name} switched from control {switched[0]} to {switched[1]}")

        if node is not None:
            node.sync_control_state(current)
        self.update_well_state_with_target(current, well_state)
        return switched

    def relaxed_bhp(self) -> float:
        """
        Most favourable bottom-hole pressure allowed by the BHP limits.

        Producers use the largest BHP limit (one atmosphere without any),
        injectors the smallest (a large default without any).
        """
        limits = [control.value for control in self.controls if isinstance(control, BHPControl)]
        if self.is_producer:
            return max(limits) if limits else c.STANDARD_PRESSURE
        return min(limits) if limits else c.MAXIMUM_INJECTION_BHP

    def _potential_rates(self, reservoir: "ReservoirState", bhp: float) -> np.ndarray:
        bhp_evaluation = Evaluation.constant(bhp, self._num_derivatives)
        rates = np.zeros(self.num_phases, dtype=np.float64)
        for perf in range(self.number_of_perforations):
            cq = self.compute_perf_rate(reservoir, perf, bhp_evaluation)
            for p in range(self.num_phases):
                rates[p] += cq[p].value
        return rates

    def compute_well_potentials(self, reservoir: "ReservoirState") -> np.ndarray:
        """
        Estimate the deliverable rate of each phase at the most relaxed BHP.

        With a THP constraint the BHP is raised (producers) or lowered
        (injectors) until the VFP relation is honoured, for at most
        `MAX_POTENTIAL_ITERATIONS` iterations. Non-convergence is tolerated.

        :param reservoir: Reservoir state.
        :return: Absolute potential rates per active phase.
        """
        bhp = self.relaxed_bhp()
        rates = self._potential_rates(reservoir, bhp)
        thp_index = self.controls.find(ControlType.THP)
        if thp_index >= 0:
            control = typing.cast(THPControl, self.controls[thp_index])
            vfp_properties = typing.cast("VFPProperties", self.vfp_properties)
            dp = self.vfp_hydrostatic_correction(control.vfp_table)
            for _ in range(c.MAX_POTENTIAL_ITERATIONS):
                aqua, liquid, vapour = self._vfp_rates(rates)
                bhp_thp = (
                    vfp_properties.bhp(control.vfp_table, aqua, liquid, vapour, control.value, control.alq)
                    - dp
                )
                new_bhp = max(bhp, bhp_thp) if self.is_producer else min(bhp, bhp_thp)
                if abs(new_bhp - bhp) <= 1e-8 * max(abs(bhp), 1.0):
                    break
                bhp = new_bhp
                rates = self._potential_rates(reservoir, bhp)
            else:
                logger.warning(
                    f"Potentials of well {self.name} did not converge in "
                    f"{c.MAX_POTENTIAL_ITERATIONS} iterations, using the last estimate"
                )
        return np.abs(rates)

    def compute_well_connection_pressures(
        self, reservoir: "ReservoirState", well_state: "WellState"
    ) -> None:
        """
        Recompute the wellbore densities and the hydrostatic pressure
        differences of all connections.

        :param reservoir: Reservoir state.
        :param well_state: Well state holding the connection rates.
        """
        start = self.first_perforation
        perf_rates = np.ascontiguousarray(
            well_state.perf_phase_rates[start : start + self.number_of_perforations],
            dtype=np.float64,
        )
        inv_b = np.ascontiguousarray(reservoir.inv_b[self.well_cells], dtype=np.float64)

        if self.is_injector and self.well.composition is not None:
            fallback_mix = np.asarray(self.well.composition, dtype=np.float64)
        else:
            fallback_mix = np.array(
                [self.well_surface_volume_fraction(p).value for p in range(self.num_phases)],
                dtype=np.float64,
            )
        self.perf_densities = compute_connection_densities(
            perf_rates, inv_b, reservoir.surface_density, fallback_mix
        )
        self.perf_pressure_diffs = compute_connection_pressure_deltas(
            self.perf_depths, self.perf_densities, float(self.reference_depth), float(self.gravity)
        )
