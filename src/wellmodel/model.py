"""
Well model coordinator.

`WellModel` owns the well units of the local process and drives them through
a Newton iteration of the coupled reservoir-well system: control and group
target updates, assembly, the Schur complement operator actions used by the
linear solver, recovery of the well update and the well-only inner solve.
"""

import logging
import typing

import attrs
import numpy as np
from scipy.sparse import coo_matrix, csr_matrix  # type: ignore[import-untyped]
from scipy.sparse.linalg import LinearOperator  # type: ignore[import-untyped]

from wellmodel.config import Config
from wellmodel.constants import c
from wellmodel.economics import DynamicListEconLimited, update_list_econ_limited
from wellmodel.errors import (
    ComputationError,
    UnsupportedConfigurationError,
    ValidationError,
)
from wellmodel.geometry import GridGeometry, compute_rep_radius_perf_length
from wellmodel.groups import WellCollection
from wellmodel.reservoir import (
    Communicator,
    FieldRateConverter,
    RateConverter,
    ReservoirState,
    ReservoirSystem,
    SerialCommunicator,
)
from wellmodel.state import WellState
from wellmodel.types import PhaseUsage, WellStatus, WellType
from wellmodel.vfp import VFPProperties
from wellmodel.well import StandardWell
from wellmodel.wells import ScheduleWell, Wells

logger = logging.getLogger(__name__)

__all__ = [
    "SimulatorReport",
    "ControlSwitch",
    "ControlSwitchLog",
    "WellModel",
    "WellModelOperator",
]


@attrs.frozen
class SimulatorReport:
    """Outcome of an assembly or well-only solve."""

    converged: bool = True
    """Whether the well equations converged."""
    total_well_iterations: int = 0
    """Number of well-only Newton iterations taken."""


@attrs.frozen
class ControlSwitch:
    """A control switch of one well."""

    well_name: str
    from_control: int
    to_control: int


class ControlSwitchLog:
    """
    Control switches of the local wells during one control update.

    The switches are only reported by `finalize`, which performs a global
    reduction and must therefore be called on every process.
    """

    def __init__(self, communicator: Communicator) -> None:
        self.communicator = communicator
        self.switches: typing.List[ControlSwitch] = []

    def record(self, well_name: str, from_control: int, to_control: int) -> None:
        self.switches.append(ControlSwitch(well_name, from_control, to_control))

    def finalize(self) -> int:
        """
        Report the recorded switches and clear the log.

        :return: Number of switches over all processes.
        """
        total = int(self.communicator.sum(len(self.switches)))
        for switch in self.switches:
            logger.info(
                f"Switching control mode for well {switch.well_name} "
                f"from {switch.from_control} to {switch.to_control}"
            )
        if total:
            logger.debug(f"{total} well control switches over all processes")
        self.switches.clear()
        return total


class WellModelOperator(LinearOperator):
    """
    Reservoir matrix with the wells eliminated, `A - sum(C^T D^-1 B)`.

    The well contributions are applied matrix free through the well model.
    """

    def __init__(self, matrix: typing.Any, well_model: "WellModel") -> None:
        self.matrix = matrix
        self.well_model = well_model
        super().__init__(dtype=np.float64, shape=matrix.shape)

    def _matvec(self, x: np.ndarray) -> np.ndarray:
        x = np.ascontiguousarray(x, dtype=np.float64).ravel()
        y = np.array(self.matrix @ x, dtype=np.float64).ravel()
        self.well_model.apply(x, y)
        return y


class WellModel:
    """Coordinator of the standard wells of the local process."""

    def __init__(
        self,
        wells: Wells,
        schedule_wells: typing.Iterable[ScheduleWell],
        config: typing.Optional[Config] = None,
        well_collection: typing.Optional[WellCollection] = None,
        rate_converter: typing.Optional[RateConverter] = None,
        communicator: typing.Optional[Communicator] = None,
        vfp_properties: typing.Optional[VFPProperties] = None,
    ) -> None:
        """
        :param wells: Well topology of the local process.
        :param schedule_wells: Schedule records of the wells for the current step.
        :param config: Simulator configuration.
        :param well_collection: Group hierarchy. All wells directly under the
            field group when not given.
        :param rate_converter: Surface to reservoir rate converter.
        :param communicator: Global reduction primitive.
        :param vfp_properties: VFP tables for THP controls.
        """
        self.wells = wells
        self.config = config or Config()
        self.params = self.config.well_model
        self.phase_usage = self.config.phase_usage
        self.communicator = communicator or SerialCommunicator()
        self.rate_converter = rate_converter or FieldRateConverter(
            self.phase_usage, self.communicator
        )
        self.vfp_properties = vfp_properties
        self.schedule_wells: typing.Dict[str, ScheduleWell] = {
            schedule_well.name: schedule_well for schedule_well in schedule_wells
        }
        if well_collection is None:
            well_collection = WellCollection(self.phase_usage)
            for well in wells:
                well_collection.add_well(well.name, well.well_type)
        self.well_collection = well_collection
        self.well_collection.set_well_indices(wells)

        self.gravity = c.GRAVITY
        self.global_num_cells = 0
        self.wells_active = False
        self._switch_log = ControlSwitchLog(self.communicator)
        self.well_container = self.create_well_container()

    def create_well_container(self) -> typing.List[StandardWell]:
        """
        Create a well unit for every well that is not shut.

        :return: The well units, in topology order.
        :raises UnsupportedConfigurationError: If a well has no schedule record,
            a mismatching type, or is a multi-segment well.
        """
        container: typing.List[StandardWell] = []
        for w, well in enumerate(self.wells):
            schedule_well = self.schedule_wells.get(well.name)
            if schedule_well is None:
                logger.error(f"Could not find well {well.name} in the schedule")
                raise UnsupportedConfigurationError(
                    f"Could not find well {well.name} in the schedule"
                )
            if schedule_well.status is WellStatus.SHUT:
                logger.debug(f"Well {well.name} is shut, no equations are created")
                continue
            if schedule_well.is_multisegment:
                raise UnsupportedConfigurationError(
                    f"Well {well.name} is a multi-segment well, which is not supported"
                )
            if schedule_well.well_type is not well.well_type:
                raise UnsupportedConfigurationError(
                    f"Well {well.name} is a {well.well_type.value} in the topology "
                    f"but a {schedule_well.well_type.value} in the schedule"
                )
            container.append(
                StandardWell(
                    well,
                    schedule_well,
                    index_of_well=w,
                    first_perforation=int(self.wells.connection_offsets[w]),
                    config=self.config,
                )
            )
        return container

    @property
    def local_wells_active(self) -> bool:
        return len(self.well_container) > 0

    @property
    def num_wells(self) -> int:
        return len(self.wells)

    def init(
        self,
        phase_usage: PhaseUsage,
        gravity: float,
        global_num_cells: int,
        num_cells: typing.Optional[int] = None,
        grid: typing.Optional[GridGeometry] = None,
    ) -> None:
        """
        Bind the run context and initialise all well units.

        The global cell count is stored even when there are no local wells,
        since it is needed by the collective formation factor average.

        :param phase_usage: Active phases.
        :param gravity: Gravitational acceleration.
        :param global_num_cells: Number of interior cells over all processes.
        :param num_cells: Number of cells on this process, `global_num_cells` when not given.
        :param grid: Grid geometry for the representative perforation geometry.
        """
        if phase_usage != self.phase_usage:
            raise ValidationError(
                f"Phase usage {phase_usage} does not match the fluid system {self.config.fluid_system!r}"
            )
        if global_num_cells <= 0:
            raise ValidationError(f"Global number of cells must be positive, got {global_num_cells}.")
        self.gravity = gravity
        self.global_num_cells = global_num_cells
        self.wells_active = int(self.communicator.sum(len(self.well_container))) > 0

        self.calculate_efficiency_factors()
        if grid is not None:
            geometry = compute_rep_radius_perf_length(grid, self.schedule_wells.values())
            for well in self.well_container:
                if well.name in geometry:
                    well.set_perforation_geometry(geometry[well.name])

        local_num_cells = num_cells if num_cells is not None else global_num_cells
        for well in self.well_container:
            well.init(phase_usage, self.vfp_properties, gravity, local_num_cells)
        logger.debug(
            f"Initialised {len(self.well_container)} wells, wells active: {self.wells_active}"
        )

    def calculate_efficiency_factors(self) -> None:
        """Set the accumulated group efficiency factor of every well."""
        for well in self.well_container:
            well.set_well_efficiency_factor(
                self.well_collection.accumulative_efficiency_factor(well.name)
            )

    def conversion_coefficients(self) -> np.ndarray:
        return np.asarray(self.rate_converter.calc_coeff(0), dtype=np.float64)

    def assemble(
        self,
        reservoir: ReservoirState,
        iteration_idx: int,
        dt: float,
        well_state: WellState,
        system: typing.Optional[ReservoirSystem] = None,
    ) -> SimulatorReport:
        """
        Assemble the well equations of a Newton iteration.

        On the first iteration of a step the step is prepared, connection
        pressures and the accumulation terms are recomputed and, when
        configured, the well equations are solved alone first.

        :param reservoir: Reservoir state of the iteration.
        :param iteration_idx: Newton iteration index within the step.
        :param dt: Timestep size (s).
        :param well_state: Well state, updated in place.
        :param system: Reservoir residual and Jacobian receiving the well source terms.
        :return: The `SimulatorReport` of the optional well-only solve.
        """
        if iteration_idx == 0:
            self.prepare_time_step(reservoir, well_state)

        self.update_well_controls(well_state)
        self.update_group_controls(well_state)

        report = SimulatorReport()
        if not self.wells_active:
            return report

        self.set_well_variables(well_state)
        if iteration_idx == 0:
            self.compute_well_connection_pressures(reservoir, well_state)
            self.compute_accum_wells()
            if self.params.solve_welleq_initially:
                report = self.solve_well_eq(reservoir, dt, well_state)

        self.assemble_well_eq(reservoir, dt, well_state, only_wells=False, system=system)
        return report

    def assemble_well_eq(
        self,
        reservoir: ReservoirState,
        dt: float,
        well_state: WellState,
        only_wells: bool,
        system: typing.Optional[ReservoirSystem] = None,
    ) -> None:
        for well in self.well_container:
            well.assemble_well_eq(reservoir, dt, well_state, only_wells, system)

    def set_well_variables(self, well_state: WellState) -> None:
        for well in self.well_container:
            well.set_well_variables(well_state)

    def compute_accum_wells(self) -> None:
        for well in self.well_container:
            well.compute_accum_well()

    def compute_well_connection_pressures(
        self, reservoir: ReservoirState, well_state: WellState
    ) -> None:
        for well in self.well_container:
            well.compute_well_connection_pressures(reservoir, well_state)

    def solve_well_eq(
        self, reservoir: ReservoirState, dt: float, well_state: WellState
    ) -> SimulatorReport:
        """
        Solve the well equations with the reservoir state frozen.

        Runs at most `max_welleq_iter` Newton iterations. If the wells (and,
        under group control, the group targets) do not converge, the well
        state and the control selections are restored to their values before
        the solve.

        :param reservoir: Reservoir state.
        :param dt: Timestep size (s).
        :param well_state: Well state, updated in place.
        :return: The `SimulatorReport` of the solve.
        """
        b_avg = self.compute_average_formation_factor(reservoir)
        snapshot = well_state.copy()
        max_iterations = self.params.max_welleq_iter
        iteration = 0
        converged = False
        try:
            while True:
                self.assemble_well_eq(reservoir, dt, well_state, only_wells=True)
                converged = self.get_well_convergence(b_avg)
                if converged and self.well_collection.group_control_active:
                    converged = self.well_collection.group_target_converged(
                        well_state.well_rates, self.conversion_coefficients()
                    )
                if converged:
                    break

                iteration += 1
                for well in self.well_container:
                    well.well_eq_iteration(well_state)
                if self.wells_active:
                    self.update_well_controls(well_state)
                    self.update_group_controls(well_state)
                    self.set_well_variables(well_state)
                if iteration >= max_iterations:
                    break
        except ComputationError:
            logger.error("Well equations failed, restoring the well state")
            self._restore_well_state(well_state, snapshot)
            raise

        if not converged:
            logger.debug(
                f"Well equations did not converge in {iteration} iterations, restoring the well state"
            )
            self._restore_well_state(well_state, snapshot)
        else:
            logger.debug(f"Well equations converged in {iteration} iterations")
        return SimulatorReport(converged=converged, total_well_iterations=iteration)

    def _restore_well_state(self, well_state: WellState, snapshot: WellState) -> None:
        well_state.restore(snapshot)
        self.reset_well_control_from_state(well_state)
        self.set_well_variables(well_state)

    def get_well_convergence(self, b_avg: np.ndarray) -> bool:
        """
        Whether the wells of all processes converged.

        :param b_avg: Average formation volume factor per active phase.
        :return: True if no well on any process is unconverged.
        """
        unconverged = sum(
            1 for well in self.well_container if not well.get_well_convergence(b_avg)
        )
        return int(self.communicator.sum(unconverged)) == 0

    def compute_average_formation_factor(self, reservoir: ReservoirState) -> np.ndarray:
        """
        Average formation volume factor of each phase over the interior cells
        of all processes. Collective, must be called on every process.

        :param reservoir: Reservoir state.
        :return: `sum(1 / inv_b) / global_num_cells` per active phase.
        """
        interior = typing.cast(np.ndarray, reservoir.interior)
        local = (1.0 / reservoir.inv_b[interior]).sum(axis=0)
        total = np.asarray(self.communicator.sum(local), dtype=np.float64)
        return total / self.global_num_cells

    def apply(self, x: np.ndarray, Ax: typing.Optional[np.ndarray] = None) -> None:
        """
        Apply the Schur complement contribution of all wells.

        With `Ax` given, `Ax -= sum(C^T D^-1 B x)`. Without, `x` is a reservoir
        residual and the well residuals are eliminated from it in place,
        `x -= sum(C^T D^-1 r_well)`.

        :param x: Reservoir vector (or residual).
        :param Ax: Contiguous reservoir vector updated in place.
        """
        if Ax is None:
            for well in self.well_container:
                well.apply_to_residual(x)
            return
        for well in self.well_container:
            well.apply(x, Ax)

    def apply_scale_add(self, alpha: float, x: np.ndarray, Ax: np.ndarray) -> None:
        """`Ax += alpha * (-sum(C^T D^-1 B x))`."""
        if not self.well_container:
            return
        scale_add_res = np.zeros_like(Ax, dtype=np.float64)
        self.apply(x, scale_add_res)
        Ax += alpha * scale_add_res

    def linear_operator(self, matrix: typing.Any) -> WellModelOperator:
        """Operator of the reservoir matrix with the wells applied matrix free."""
        return WellModelOperator(matrix, self)

    def add_well_contributions(self, matrix: typing.Any) -> csr_matrix:
        """
        Fold the Schur complement blocks of all wells into a copy of a reservoir matrix.

        :param matrix: Sparse reservoir matrix.
        :return: `A - sum(C^T D^-1 B)` as a CSR matrix.
        """
        rows: typing.List[np.ndarray] = []
        cols: typing.List[np.ndarray] = []
        values: typing.List[np.ndarray] = []
        for well in self.well_container:
            num_eq = well.num_eq
            offsets = np.arange(num_eq)
            for row_cell, col_cell, block in well.schur_blocks():
                block_rows, block_cols = np.meshgrid(
                    row_cell * num_eq + offsets, col_cell * num_eq + offsets, indexing="ij"
                )
                rows.append(block_rows.ravel())
                cols.append(block_cols.ravel())
                values.append(block.ravel())
        result = csr_matrix(matrix, dtype=np.float64, copy=True)
        if not values:
            return result
        contributions = coo_matrix(
            (np.concatenate(values), (np.concatenate(rows), np.concatenate(cols))),
            shape=result.shape,
        ).tocsr()
        return csr_matrix(result - contributions)

    def recover_well_solution_and_update_well_state(
        self, x: np.ndarray, well_state: WellState
    ) -> None:
        """
        Recover the well updates from the reservoir update and apply them.

        :param x: Reservoir update.
        :param well_state: Well state, updated in place.
        """
        for well in self.well_container:
            well.recover_well_solution_and_update_well_state(x, well_state)

    def residual(self) -> np.ndarray:
        """Residuals of all local well equations, well after well."""
        if not self.well_container:
            return np.zeros(0, dtype=np.float64)
        return np.concatenate([well.residual_well for well in self.well_container])

    def update_well_controls(self, well_state: WellState) -> None:
        """
        Switch violated controls and project the enforced targets of all wells.

        Only skipped when there are no wells on any process. Ends with
        `finalize_control_sync`, which is collective.

        :param well_state: Well state, updated in place.
        """
        if not self.wells_active:
            return
        for well in self.well_container:
            switched = well.update_well_control(well_state, self.well_collection)
            if switched is not None:
                self._switch_log.record(well.name, *switched)
        self.finalize_control_sync()

    def finalize_control_sync(self) -> int:
        """
        Report the control switches of all processes. Collective.

        :return: Number of switches over all processes.
        """
        return self._switch_log.finalize()

    def _sync_current_controls(self, well_state: WellState) -> None:
        for well in self.well_container:
            well_state.current_controls[well.index_of_well] = well.controls.current
            self.well_collection.find_well_node(well.name).sync_control_state(
                well.controls.current
            )

    def update_group_controls(self, well_state: WellState) -> None:
        """
        Refresh voidage replacement and group targets and project them into the state.

        :param well_state: Well state, updated in place.
        """
        collection = self.well_collection
        if not collection.group_control_active:
            return
        if collection.having_vrep_groups:
            self.apply_vrep_group_control(well_state)
        collection.update_well_targets(
            self.wells, well_state.well_rates, self.conversion_coefficients()
        )
        self._sync_current_controls(well_state)
        for well in self.well_container:
            well.update_well_state_with_target(
                int(well_state.current_controls[well.index_of_well]), well_state
            )

    def compute_well_voidage_rates(
        self, well_state: WellState
    ) -> typing.Tuple[np.ndarray, np.ndarray]:
        """
        Reservoir voidage rate of every producer.

        :param well_state: Well state.
        :return: (voidage rate per well, conversion coefficients per well and phase).
            Injectors have zero voidage and carry their conversion coefficients.
        """
        coefficients = self.conversion_coefficients()
        voidage_rates = np.zeros(self.num_wells, dtype=np.float64)
        voidage_conversion_coeffs = np.zeros(
            (self.num_wells, self.phase_usage.num_phases), dtype=np.float64
        )
        for well in self.well_container:
            w = well.index_of_well
            if well.well_type is WellType.PRODUCER:
                voidage_rates[w] = float(np.dot(-well_state.well_rates[w], coefficients))
            else:
                voidage_conversion_coeffs[w] = coefficients
        return voidage_rates, voidage_conversion_coeffs

    def apply_vrep_group_control(self, well_state: WellState) -> None:
        voidage_rates, _ = self.compute_well_voidage_rates(well_state)
        self.well_collection.apply_vrep_group_controls(
            self.wells, voidage_rates, self.conversion_coefficients()
        )

    def compute_well_potentials(
        self, reservoir: ReservoirState, well_state: WellState
    ) -> np.ndarray:
        """
        Potentials of all local wells.

        :return: Absolute potential rates, shape (num_wells, num_phases).
        """
        self.set_well_variables(well_state)
        potentials = np.zeros((self.num_wells, self.phase_usage.num_phases), dtype=np.float64)
        for well in self.well_container:
            potentials[well.index_of_well] = well.compute_well_potentials(reservoir)
        return potentials

    def reset_well_control_from_state(self, well_state: WellState) -> None:
        """Make the controls of every well follow the selection in the state."""
        for well in self.well_container:
            well.controls.current = int(well_state.current_controls[well.index_of_well])
            self.well_collection.find_well_node(well.name).sync_control_state(
                well.controls.current
            )

    def prepare_time_step(self, reservoir: ReservoirState, well_state: WellState) -> None:
        """
        Prepare the wells for a new timestep.

        Controls are resynchronised from the state, wells without a valid
        control are put back under group control, guide rates derived from
        potentials when needed, group targets applied or updated and all
        targets projected into the state.

        :param reservoir: Reservoir state at the start of the step.
        :param well_state: Well state, updated in place.
        """
        if isinstance(self.rate_converter, FieldRateConverter):
            self.rate_converter.define_state(reservoir)
        collection = self.well_collection
        for well in self.well_container:
            w = well.index_of_well
            group_control_index = collection.find_well_node(well.name).group_control_index
            if group_control_index >= 0 and well_state.current_controls[w] < 0:
                well_state.current_controls[w] = group_control_index
        self.reset_well_control_from_state(well_state)

        if collection.group_control_active:
            coefficients = self.conversion_coefficients()
            if collection.require_well_potentials():
                potentials = self.compute_well_potentials(reservoir, well_state)
                collection.set_guide_rates_with_potentials(potentials, coefficients)
            if collection.having_vrep_groups:
                self.apply_vrep_group_control(well_state)
            if not collection.group_control_applied:
                collection.apply_group_controls(self.wells, coefficients)
            else:
                collection.update_well_targets(self.wells, well_state.well_rates, coefficients)
            self._sync_current_controls(well_state)

        for well in self.well_container:
            current = well.controls.current
            if not 0 <= current < len(well.controls):
                raise UnsupportedConfigurationError(
                    f"Well {well.name} has no valid control for the timestep"
                )
            well.update_well_state_with_target(current, well_state)
        well_state.is_new_well[:] = False

    def update_list_econ_limited(self, well_state: WellState) -> DynamicListEconLimited:
        """Evaluate the economic limits of the scheduled wells."""
        return update_list_econ_limited(
            self.schedule_wells.values(), well_state, self.wells, self.phase_usage
        )

    def _per_perforation(self, attribute: str) -> np.ndarray:
        values = np.zeros(self.wells.number_of_perforations, dtype=np.float64)
        for well in self.well_container:
            start = well.first_perforation
            values[start : start + well.number_of_perforations] = getattr(well, attribute)
        return values

    def well_perforation_densities(self) -> np.ndarray:
        return self._per_perforation("perf_densities")

    def well_perforation_pressure_diffs(self) -> np.ndarray:
        return self._per_perforation("perf_pressure_diffs")

    def well_perf_efficiency_factors(self) -> np.ndarray:
        return self._per_perforation("perf_efficiency_factors")
