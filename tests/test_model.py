"""Tests for the well model coordinator."""

import logging

import numpy as np
import pytest
from scipy.sparse import csr_matrix, identity

from wellmodel import (
    BHPControl,
    ComputationError,
    ControlState,
    ControlSwitchLog,
    EconomicLimits,
    PhaseUsage,
    ProductionControlMode,
    ProductionSpecification,
    ScheduleWell,
    SerialCommunicator,
    StandardWell,
    SurfaceRateControl,
    UnsupportedConfigurationError,
    ValidationError,
    WellCollection,
    WellModel,
    Wells,
    WellState,
    WellStatus,
    WellType,
    c,
)

DT = 86400.0
PRODUCER_RATES = np.array([-5e-3, -5e-3, -0.5])
RATE_LIMITED = (
    BHPControl(value=1.5e7),
    SurfaceRateControl(value=-1e-3, distribution=(0.0, 1.0, 0.0)),
)


def _prepared(model, reservoir, well_state):
    model.set_well_variables(well_state)
    model.compute_accum_wells()
    model.assemble_well_eq(reservoir, DT, well_state, only_wells=True)


class TestWellContainer:
    def test_missing_schedule_record(self, producer):
        with pytest.raises(UnsupportedConfigurationError):
            WellModel(Wells([producer]), [])

    def test_shut_wells_are_skipped(self, producer, injector):
        schedule = [
            ScheduleWell(name="PROD", well_type=WellType.PRODUCER, status=WellStatus.SHUT),
            ScheduleWell(name="INJ", well_type=WellType.INJECTOR),
        ]
        model = WellModel(Wells([producer, injector]), schedule)
        assert [well.name for well in model.well_container] == ["INJ"]
        assert model.well_container[0].index_of_well == 1
        assert model.well_container[0].first_perforation == 1

    def test_multisegment_well_rejected(self, producer):
        schedule = [
            ScheduleWell(name="PROD", well_type=WellType.PRODUCER, is_multisegment=True)
        ]
        with pytest.raises(UnsupportedConfigurationError):
            WellModel(Wells([producer]), schedule)

    def test_type_mismatch_rejected(self, producer):
        schedule = [ScheduleWell(name="PROD", well_type=WellType.INJECTOR)]
        with pytest.raises(UnsupportedConfigurationError):
            WellModel(Wells([producer]), schedule)


class TestInit:
    def test_phase_usage_must_match(self, producer):
        model = WellModel(
            Wells([producer]), [ScheduleWell(name="PROD", well_type=WellType.PRODUCER)]
        )
        with pytest.raises(ValidationError):
            model.init(PhaseUsage.from_fluid_system("oilwater"), c.GRAVITY, 3)

    def test_global_cells_must_be_positive(self, producer, phase_usage):
        model = WellModel(
            Wells([producer]), [ScheduleWell(name="PROD", well_type=WellType.PRODUCER)]
        )
        with pytest.raises(ValidationError):
            model.init(phase_usage, c.GRAVITY, 0)

    def test_wells_active(self, make_model, producer):
        model, _, _ = make_model([producer])
        assert model.wells_active
        assert model.local_wells_active

        empty, _, _ = make_model([])
        assert not empty.wells_active
        assert empty.global_num_cells == 3

    def test_efficiency_factors_from_groups(self, make_model, producer, phase_usage):
        collection = WellCollection(phase_usage)
        collection.add_group("G1", efficiency_factor=0.5)
        collection.add_well("PROD", WellType.PRODUCER, parent="G1", efficiency_factor=0.8)
        model, _, _ = make_model([producer], well_collection=collection)
        assert np.isclose(model.well_container[0].well_efficiency_factor, 0.4)
        np.testing.assert_allclose(model.well_perf_efficiency_factors(), [0.4])


class TestSolveWellEq:
    def test_converges_to_inflow(self, make_model, producer, reservoir):
        model, _, well_state = make_model([producer])
        model.set_well_variables(well_state)
        model.compute_accum_wells()
        report = model.solve_well_eq(reservoir, DT, well_state)
        assert report.converged
        assert report.total_well_iterations == 1
        np.testing.assert_allclose(well_state.well_rates[0], PRODUCER_RATES, rtol=1e-6)

    def test_rolls_back_when_not_converged(self, make_model, producer, reservoir, monkeypatch):
        model, _, well_state = make_model([producer])
        model.set_well_variables(well_state)
        model.compute_accum_wells()
        snapshot = well_state.copy()

        iterations = []
        well_eq_iteration = StandardWell.well_eq_iteration

        def counting_iteration(self, state):
            iterations.append(self.name)
            well_eq_iteration(self, state)

        monkeypatch.setattr(StandardWell, "get_well_convergence", lambda self, b_avg: False)
        monkeypatch.setattr(StandardWell, "well_eq_iteration", counting_iteration)

        report = model.solve_well_eq(reservoir, DT, well_state)
        assert not report.converged
        assert report.total_well_iterations == 15
        assert len(iterations) == 15
        assert well_state.equals(snapshot)
        assert model.well_container[0].controls.current == 0

    def test_rollback_restores_control_selection(
        self, make_model, make_well, phase_usage, reservoir, monkeypatch
    ):
        definition = make_well("P1", WellType.PRODUCER, [0], controls=RATE_LIMITED)
        collection = WellCollection(phase_usage)
        collection.add_well("P1", WellType.PRODUCER)
        node = collection.find_well_node("P1")
        # the rate limit plays the role of the group assigned control
        node.group_control_index = 1
        model, _, well_state = make_model([definition], well_collection=collection)
        model.set_well_variables(well_state)
        model.compute_accum_wells()
        snapshot = well_state.copy()

        switches = []
        update_well_control = StandardWell.update_well_control

        def recording_update(self, state, collection=None):
            switched = update_well_control(self, state, collection)
            if switched is not None:
                switches.append(switched)
            return switched

        monkeypatch.setattr(StandardWell, "get_well_convergence", lambda self, b_avg: False)
        monkeypatch.setattr(StandardWell, "update_well_control", recording_update)

        report = model.solve_well_eq(reservoir, DT, well_state)
        assert not report.converged
        assert switches[0] == (0, 1)
        assert well_state.equals(snapshot)
        assert well_state.current_controls[0] == 0
        assert model.well_container[0].controls.current == 0
        assert node.individual_control
        assert node.control_state is ControlState.INDIVIDUAL_CONTROL

    def test_rolls_back_when_residual_explodes(self, make_model, producer, reservoir, config):
        config = config.with_parameters(max_residual_allowed=1e-4)
        model, _, well_state = make_model([producer], config=config)
        model.set_well_variables(well_state)
        model.compute_accum_wells()
        snapshot = well_state.copy()

        with pytest.raises(ComputationError):
            model.solve_well_eq(reservoir, DT, well_state)
        assert well_state.equals(snapshot)
        assert not well_state.perf_phase_rates.any()
        assert model.well_container[0].controls.current == 0

    def test_iteration_limit_from_config(self, make_model, producer, reservoir, config, monkeypatch):
        config = config.with_parameters(max_welleq_iter=3)
        model, _, well_state = make_model([producer], config=config)
        monkeypatch.setattr(StandardWell, "get_well_convergence", lambda self, b_avg: False)
        _prepared(model, reservoir, well_state)
        report = model.solve_well_eq(reservoir, DT, well_state)
        assert report.total_well_iterations == 3

    def test_average_formation_factor(self, make_model, producer, make_reservoir):
        model, _, _ = make_model([producer])
        np.testing.assert_allclose(
            model.compute_average_formation_factor(make_reservoir()), [1.0, 1.0, 0.01]
        )


class TestAssemble:
    def test_first_iteration_solves_wells(self, make_model, producer, reservoir, system):
        model, _, well_state = make_model([producer])
        report = model.assemble(reservoir, 0, DT, well_state, system)
        assert report.converged
        assert report.total_well_iterations == 1
        np.testing.assert_allclose(system.residual[:3], -PRODUCER_RATES, rtol=1e-10)
        np.testing.assert_allclose(model.residual(), 0.0, atol=1e-8)
        assert model.get_well_convergence(model.compute_average_formation_factor(reservoir))
        assert not well_state.is_new_well.any()

    def test_without_wells(self, make_model, reservoir, system):
        model, _, well_state = make_model([])
        report = model.assemble(reservoir, 0, DT, well_state, system)
        assert report.converged
        assert report.total_well_iterations == 0
        assert model.residual().size == 0
        assert not system.residual.any()


class TestSchurOperator:
    @pytest.fixture
    def shared_cell_model(self, make_model, make_well, make_reservoir):
        """Two rate controlled producers both perforating cell 1."""
        control = SurfaceRateControl(value=-5e-3, distribution=(0.0, 1.0, 0.0))
        definitions = [
            make_well("P1", WellType.PRODUCER, [0, 1], controls=[control]),
            make_well("P2", WellType.PRODUCER, [1, 2], controls=[control]),
        ]
        model, _, well_state = make_model(definitions)
        reservoir = make_reservoir(pressure=[2.0e7, 2.1e7, 2.2e7])
        _prepared(model, reservoir, well_state)
        return model, well_state

    @pytest.fixture
    def x(self):
        return np.random.default_rng(11).normal(size=9)

    def test_apply_is_order_independent(self, shared_cell_model, x):
        model, _ = shared_cell_model
        forward = np.zeros(9)
        model.apply(x, forward)

        model.well_container.reverse()
        backward = np.zeros(9)
        model.apply(x, backward)
        tolerance = 1e-12 * np.abs(forward).max()
        np.testing.assert_allclose(backward, forward, rtol=1e-12, atol=tolerance)

        separate = np.zeros(9)
        for well in model.well_container:
            well.apply(x, separate)
        np.testing.assert_allclose(separate, forward, rtol=1e-12, atol=tolerance)
        assert np.any(forward[3:6] != 0.0)

    def test_add_well_contributions_matches_apply(self, shared_cell_model, x):
        model, _ = shared_cell_model
        applied = np.zeros(9)
        model.apply(x, applied)
        matrix = model.add_well_contributions(csr_matrix((9, 9)))
        np.testing.assert_allclose(
            matrix @ x, applied, rtol=1e-8, atol=1e-10 * np.abs(applied).max()
        )

    def test_linear_operator(self, shared_cell_model, x):
        model, _ = shared_cell_model
        matrix = 1e-8 * identity(9, format="csr")
        applied = np.zeros(9)
        model.apply(x, applied)
        operator = model.linear_operator(matrix)
        expected = matrix @ x + applied
        np.testing.assert_allclose(
            operator @ x, expected, rtol=1e-8, atol=1e-10 * np.abs(expected).max()
        )

    def test_apply_scale_add(self, shared_cell_model, x):
        model, _ = shared_cell_model
        applied = np.zeros(9)
        model.apply(x, applied)
        result = np.ones(9)
        model.apply_scale_add(2.0, x, result)
        np.testing.assert_allclose(result, 1.0 + 2.0 * applied)

    def test_apply_to_residual(self, shared_cell_model):
        model, _ = shared_cell_model
        expected = np.zeros(9)
        for well in model.well_container:
            contribution = np.einsum(
                "kij,i->kj", well.c_blocks, well.inv_d @ well.residual_well
            )
            for k, cell in enumerate(well.well_cells):
                expected[3 * cell : 3 * cell + 3] -= contribution[k]
        residual = np.zeros(9)
        model.apply(residual)
        np.testing.assert_allclose(
            residual, expected, rtol=1e-10, atol=1e-12 * np.abs(expected).max()
        )

    def test_recover_with_zero_update(self, shared_cell_model):
        model, well_state = shared_cell_model
        iterated = well_state.copy()
        for well in model.well_container:
            well.well_eq_iteration(iterated)
        model.recover_well_solution_and_update_well_state(np.zeros(9), well_state)
        np.testing.assert_array_equal(well_state.well_solutions, iterated.well_solutions)

    def test_residual_layout(self, shared_cell_model):
        model, _ = shared_cell_model
        residual = model.residual()
        assert residual.shape == (8,)
        np.testing.assert_array_equal(residual[4:], model.well_container[1].residual_well)


class TestControls:
    def test_update_well_controls_is_idempotent(self, make_model, producer):
        model, _, well_state = make_model([producer])
        well_state.well_rates[0] = PRODUCER_RATES
        model.update_well_controls(well_state)
        snapshot = well_state.copy()
        model.update_well_controls(well_state)
        assert well_state.equals(snapshot)

    def test_switches_are_logged(self, make_model, make_well, caplog):
        definition = make_well("P1", WellType.PRODUCER, [0], controls=RATE_LIMITED)
        model, _, well_state = make_model([definition])
        well_state.well_rates[0] = PRODUCER_RATES
        with caplog.at_level(logging.INFO, logger="wellmodel.model"):
            model.update_well_controls(well_state)
        assert "Switching control mode for well P1 from 0 to 1" in caplog.text
        assert well_state.current_controls[0] == 1

    def test_switch_log_counts_and_clears(self):
        log = ControlSwitchLog(SerialCommunicator())
        log.record("P1", 0, 1)
        log.record("P2", 1, 0)
        assert log.finalize() == 2
        assert log.finalize() == 0

    def test_reset_from_state(self, make_model, make_well):
        definition = make_well("P1", WellType.PRODUCER, [0], controls=RATE_LIMITED)
        model, _, well_state = make_model([definition])
        well_state.current_controls[0] = 1
        model.reset_well_control_from_state(well_state)
        assert model.well_container[0].controls.current == 1


class TestGroupControl:
    def test_prepare_time_step_applies_field_target(
        self, make_model, producer, phase_usage, reservoir
    ):
        collection = WellCollection(phase_usage)
        collection.nodes[WellCollection.ROOT].production = ProductionSpecification(
            ProductionControlMode.ORAT, target=0.004
        )
        collection.add_well("PROD", WellType.PRODUCER)
        model, _, well_state = make_model([producer], well_collection=collection)

        model.prepare_time_step(reservoir, well_state)
        assert well_state.current_controls[0] == 1
        assert model.well_container[0].controls.current == 1
        assert np.isclose(well_state.well_rates[0, 1], -0.004)
        assert np.isclose(collection.find_well_node("PROD").guide_rate, 5e-3)
        assert not well_state.is_new_well.any()

    def test_well_without_control_returns_to_group_control(
        self, make_model, producer, phase_usage, reservoir
    ):
        collection = WellCollection(phase_usage)
        collection.nodes[WellCollection.ROOT].production = ProductionSpecification(
            ProductionControlMode.ORAT, target=0.004
        )
        collection.add_well("PROD", WellType.PRODUCER)
        model, _, well_state = make_model([producer], well_collection=collection)
        model.prepare_time_step(reservoir, well_state)

        well_state.current_controls[0] = -1
        model.prepare_time_step(reservoir, well_state)
        node = collection.find_well_node("PROD")
        assert well_state.current_controls[0] == node.group_control_index == 1
        assert model.well_container[0].controls.current == 1
        assert node.control_state is ControlState.GROUP_CONTROL
        assert np.isclose(well_state.well_rates[0, 1], -0.004)

    def test_voidage_rates(self, make_model, producer, injector):
        model, _, well_state = make_model([producer, injector])
        well_state.well_rates[0] = PRODUCER_RATES
        well_state.well_rates[1] = [0.01, 0.0, 0.0]
        voidage, coefficients = model.compute_well_voidage_rates(well_state)
        np.testing.assert_allclose(voidage, [0.51, 0.0])
        np.testing.assert_allclose(coefficients, [[0.0, 0.0, 0.0], [1.0, 1.0, 1.0]])


class TestPotentials:
    def test_potentials_per_well(self, make_model, producer, injector, reservoir):
        model, _, well_state = make_model([producer, injector])
        potentials = model.compute_well_potentials(reservoir, well_state)
        assert potentials.shape == (2, 3)
        np.testing.assert_allclose(potentials[0], -PRODUCER_RATES, rtol=1e-10)
        np.testing.assert_allclose(potentials[1], [1.5e-2, 0.0, 0.0], rtol=1e-10, atol=1e-20)


class TestPerforationAccessors:
    def test_defaults_before_assembly(self, make_model, producer, injector):
        model, _, _ = make_model([producer, injector])
        np.testing.assert_array_equal(model.well_perforation_densities(), [0.0, 0.0])
        np.testing.assert_array_equal(model.well_perforation_pressure_diffs(), [0.0, 0.0])
        np.testing.assert_array_equal(model.well_perf_efficiency_factors(), [1.0, 1.0])


class TestEconomicLimits:
    def test_scheduled_limits_are_checked(self, producer, phase_usage):
        schedule = [
            ScheduleWell(
                name="PROD",
                well_type=WellType.PRODUCER,
                econ_limits=EconomicLimits(min_oil_rate=1.0),
            )
        ]
        wells = Wells([producer])
        model = WellModel(wells, schedule)
        well_state = WellState.initialize(wells, phase_usage)
        well_state.well_rates[0] = PRODUCER_RATES
        directives = model.update_list_econ_limited(well_state)
        assert directives.shut_wells == ["PROD"]
