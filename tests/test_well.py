"""Tests for the equations, blocks and state updates of a single standard well."""

import numpy as np
import pytest

from wellmodel import (
    BHPControl,
    InjectionControlMode,
    InjectionSpecification,
    ReservoirRateControl,
    ScheduleWell,
    StandardWell,
    SurfaceRateControl,
    THPControl,
    UnsupportedConfigurationError,
    ComputationError,
    ValidationError,
    VFPInjectionTable,
    VFPProductionTable,
    VFPProperties,
    WellCollection,
    WellDefinition,
    Wells,
    WellState,
    WellType,
    Perforation,
    WellControls,
    c,
    compute_connection_densities,
    compute_connection_pressure_deltas,
)

DT = 86400.0
RATE_LIMITED = (
    BHPControl(value=1.5e7),
    SurfaceRateControl(value=-1e-3, distribution=(0.0, 1.0, 0.0)),
)


def _reconstructed_rates(unit, state):
    """Surface rates `G * F_p / g_p` from the primary variables of the state."""
    w = unit.index_of_well
    water_fraction = state.solution(1, w)
    gas_fraction = state.solution(2, w)
    fractions = np.array(
        [water_fraction, 1.0 - water_fraction - gas_fraction, gas_fraction]
    )
    scalings = np.array([unit.scaling_factor(p) for p in range(3)])
    return state.solution(0, w) * fractions / scalings


def _assembled(unit, reservoir, state, system=None, only_wells=False):
    unit.set_well_variables(state)
    unit.compute_accum_well()
    unit.assemble_well_eq(reservoir, DT, state, only_wells, system)
    return unit


class TestInit:
    def test_well_without_perforations(self, make_unit):
        definition = WellDefinition(
            name="EMPTY", well_type=WellType.PRODUCER, perforations=[]
        )
        with pytest.raises(UnsupportedConfigurationError):
            make_unit(definition)

    def test_perforation_outside_reservoir(self, make_well, make_unit):
        with pytest.raises(ValidationError):
            make_unit(make_well("P1", WellType.PRODUCER, [5]))

    def test_thp_control_needs_vfp_tables(self, make_well, make_unit):
        definition = make_well(
            "P1", WellType.PRODUCER, [0], controls=[THPControl(value=1e6, vfp_table=1)]
        )
        with pytest.raises(UnsupportedConfigurationError):
            make_unit(definition)

    def test_multisegment_rejected(self, producer, config):
        schedule = ScheduleWell(
            name="PROD", well_type=WellType.PRODUCER, is_multisegment=True
        )
        with pytest.raises(UnsupportedConfigurationError):
            StandardWell(producer, schedule, 0, 0, config)

    def test_rate_scaling(self, make_well, make_unit):
        resv = ReservoirRateControl(value=-0.01, distribution=(1.0, 0.0, 0.005))
        unit = make_unit(make_well("P1", WellType.PRODUCER, [0], controls=[resv]))
        assert unit.scaling_factor(0, BHPControl(value=1e7)) == 1.0
        assert unit.scaling_factor(2, BHPControl(value=1e7)) == 0.01
        # under reservoir rate control zero coefficients fall back to one
        assert unit.scaling_factor(1) == 1.0
        assert unit.scaling_factor(2) == 0.005


class TestUpdateWellStateWithTarget:
    rates = np.array([-2e-3, -5e-3, -0.5])

    def test_producer_surface_rate(self, make_well, make_unit, phase_usage):
        control = SurfaceRateControl(value=-0.01, distribution=(0.0, 1.0, 0.0))
        definition = make_well("P1", WellType.PRODUCER, [0], controls=[control])
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)
        state.well_rates[0] = self.rates

        unit.update_well_state_with_target(0, state)
        np.testing.assert_allclose(state.well_rates[0], [-4e-3, -0.01, -1.0])
        np.testing.assert_allclose(_reconstructed_rates(unit, state), state.well_rates[0])

    def test_producer_without_rates_splits_target(self, make_well, make_unit, phase_usage):
        control = SurfaceRateControl(value=-0.01, distribution=(0.0, 1.0, 0.0))
        definition = make_well("P1", WellType.PRODUCER, [0], controls=[control])
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)

        unit.update_well_state_with_target(0, state)
        np.testing.assert_allclose(state.well_rates[0], [-0.01, -0.01, -0.01])
        np.testing.assert_allclose(_reconstructed_rates(unit, state), state.well_rates[0])

    def test_injector_surface_rate(self, make_well, make_unit, phase_usage):
        control = SurfaceRateControl(value=0.02, distribution=(1.0, 0.0, 0.0))
        definition = make_well(
            "I1", WellType.INJECTOR, [2], controls=[control], composition=(1.0, 0.0, 0.0)
        )
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)

        unit.update_well_state_with_target(0, state)
        np.testing.assert_allclose(state.well_rates[0], [0.02, 0.0, 0.0])
        assert np.isclose(state.solution(0, 0), 0.02)
        assert state.solution(1, 0) == 1.0
        assert state.solution(2, 0) == 0.0

    def test_producer_reservoir_rate(self, make_well, make_unit, phase_usage):
        control = ReservoirRateControl(value=-0.01, distribution=(1.0, 1.2, 0.005))
        definition = make_well("P1", WellType.PRODUCER, [0], controls=[control])
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)
        state.well_rates[0] = self.rates

        unit.update_well_state_with_target(0, state)
        voidage = np.dot(control.distribution, state.well_rates[0])
        assert np.isclose(voidage, -0.01)
        # under reservoir rate control the total rate is the voidage rate
        assert np.isclose(state.solution(0, 0), -0.01)
        np.testing.assert_allclose(_reconstructed_rates(unit, state), state.well_rates[0])

    def test_bhp_keeps_rates(self, make_well, make_unit, phase_usage):
        definition = make_well("P1", WellType.PRODUCER, [0])
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)
        state.well_rates[0] = self.rates
        state.bhp[0] = 1.0e7

        unit.update_well_state_with_target(0, state)
        assert state.bhp[0] == 1.5e7
        assert state.solution(3, 0) == 1.5e7
        np.testing.assert_allclose(state.well_rates[0], self.rates)
        np.testing.assert_allclose(_reconstructed_rates(unit, state), self.rates)

    def test_thp_sets_bhp_from_vfp_table(self, make_well, make_unit, phase_usage):
        table = VFPInjectionTable(
            table_id=2,
            datum_depth=2000.0,
            flo_values=[0.0, 1.0],
            thp_values=[1.0e6, 1.0e7],
            bhp_values=[[1.0e6, 3.0e6], [1.0e7, 1.2e7]],
        )
        definition = make_well(
            "I1",
            WellType.INJECTOR,
            [2],
            controls=[THPControl(value=5.0e6, vfp_table=2)],
            composition=(1.0, 0.0, 0.0),
        )
        unit = make_unit(definition, vfp_properties=VFPProperties.from_tables([table]))
        state = WellState.initialize(Wells([definition]), phase_usage)
        state.well_rates[0] = [0.1, 0.0, 0.0]

        unit.update_well_state_with_target(0, state)
        assert state.thp[0] == 5.0e6
        # datum at the reference depth, no hydrostatic correction
        assert np.isclose(state.bhp[0], 5.0e6 + 2.0e6 * 0.1)


class TestUpdateWellState:
    @pytest.fixture
    def unit_and_state(self, producer, make_unit, phase_usage):
        unit = make_unit(producer)
        state = WellState.initialize(Wells([producer]), phase_usage)
        return unit, state

    def test_fraction_change_is_limited(self, unit_and_state):
        unit, state = unit_and_state
        unit.update_well_state(np.array([0.0, 0.5, 0.0, 0.0]), state)
        assert np.isclose(state.solution(1, 0), 1.0 / 3.0 - 0.2)
        assert np.isclose(state.solution(2, 0), 1.0 / 3.0)

    def test_bhp_change_is_limited_and_floored(self, unit_and_state):
        unit, state = unit_and_state
        unit.update_well_state(np.array([0.0, 0.0, 0.0, 1e8]), state)
        assert state.bhp[0] == c.MINIMUM_BHP
        assert state.solution(3, 0) == c.MINIMUM_BHP

    def test_negative_fraction_is_removed(self, unit_and_state):
        unit, state = unit_and_state
        state.set_solution(1, 0, 0.1)
        state.set_solution(2, 0, 0.1)
        unit.update_well_state(np.array([0.0, 0.15, 0.0, 0.0]), state)
        assert state.solution(1, 0) == 0.0
        assert np.isclose(state.solution(2, 0), 0.1 / 1.05)

    def test_rates_follow_primary_variables(self, unit_and_state):
        unit, state = unit_and_state
        unit.update_well_state(np.array([0.03, 0.0, 0.0, 0.0]), state)
        assert np.isclose(state.solution(0, 0), -0.03)
        np.testing.assert_allclose(state.well_rates[0], [-0.01, -0.01, -1.0])


class TestAssembly:
    def test_producer_inflow(self, producer, make_unit, phase_usage, reservoir, system):
        unit = make_unit(producer)
        state = WellState.initialize(Wells([producer]), phase_usage)
        _assembled(unit, reservoir, state, system)

        expected_rates = np.array([-5e-3, -5e-3, -0.5])
        productivity = np.array([1e-9, 1e-9, 1e-7])
        np.testing.assert_allclose(state.perf_phase_rates[0], expected_rates, rtol=1e-10)
        np.testing.assert_allclose(system.residual[:3], -expected_rates, rtol=1e-10)
        assert not system.residual[3:].any()

        jacobian = system.jacobian.toarray()
        np.testing.assert_allclose(jacobian[:3, 0], productivity, rtol=1e-10)
        assert not jacobian[:3, 1:].any()

        # no rate in the well yet and no change of the mixture
        np.testing.assert_allclose(unit.residual_well, [5e-3, 5e-3, 0.5, 0.0], rtol=1e-10, atol=1e-20)
        np.testing.assert_allclose(unit.b_blocks[0, :3, 0], productivity, rtol=1e-10)
        assert not unit.b_blocks[0, 3].any()
        np.testing.assert_allclose(unit.c_blocks[0, 3, :], -productivity, rtol=1e-10)
        np.testing.assert_allclose(unit.d_matrix[:3, 3], -productivity, rtol=1e-10)
        np.testing.assert_array_equal(unit.d_matrix[3], [0.0, 0.0, 0.0, 1.0])
        assert state.perf_pressures[0] == 1.5e7

    def test_only_wells_leaves_reservoir_untouched(
        self, producer, make_unit, phase_usage, reservoir, system
    ):
        unit = make_unit(producer)
        state = WellState.initialize(Wells([producer]), phase_usage)
        _assembled(unit, reservoir, state, system, only_wells=True)
        assert not system.residual.any()
        assert system.jacobian.nnz == 0
        assert state.perf_phase_rates[0, 1] < 0.0

    def test_injection_uses_well_mixture(self, injector, make_unit, phase_usage, reservoir):
        unit = make_unit(injector, index=0, first=0)
        state = WellState.initialize(Wells([injector]), phase_usage)
        _assembled(unit, reservoir, state)
        # -T * total mobility * drawdown, all water
        np.testing.assert_allclose(
            state.perf_phase_rates[0], [1.5e-2, 0.0, 0.0], rtol=1e-10, atol=1e-20
        )

    @pytest.mark.parametrize(
        "well_type, bhp",
        [(WellType.PRODUCER, 2.5e7), (WellType.INJECTOR, 1.5e7)],
    )
    def test_crossflow_disallowed(self, make_well, make_unit, phase_usage, reservoir, well_type, bhp):
        definition = make_well(
            "W",
            well_type,
            [1],
            controls=[BHPControl(value=bhp)],
            composition=(1.0, 0.0, 0.0) if well_type is WellType.INJECTOR else None,
            allow_crossflow=False,
        )
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)
        _assembled(unit, reservoir, state)
        assert not state.perf_phase_rates.any()

    def test_efficiency_factor_scales_contributions(
        self, producer, make_unit, phase_usage, reservoir, system
    ):
        unit = make_unit(producer)
        unit.set_well_efficiency_factor(0.5)
        state = WellState.initialize(Wells([producer]), phase_usage)
        _assembled(unit, reservoir, state, system)
        np.testing.assert_allclose(system.residual[:3], [2.5e-3, 2.5e-3, 0.25], rtol=1e-10)
        np.testing.assert_allclose(unit.residual_well[:3], [2.5e-3, 2.5e-3, 0.25], rtol=1e-10)
        # connection rates are reported without the efficiency factor
        np.testing.assert_allclose(state.perf_phase_rates[0], [-5e-3, -5e-3, -0.5], rtol=1e-10)


class TestSchurComplement:
    @pytest.fixture
    def assembled_unit(self, make_well, make_unit, phase_usage, make_reservoir):
        """Rate controlled producer, whose bottom-hole pressure couples to the reservoir."""
        control = SurfaceRateControl(value=-5e-3, distribution=(0.0, 1.0, 0.0))
        definition = make_well("P1", WellType.PRODUCER, [0, 2], controls=[control])
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage, np.full(3, 2.0e7))
        reservoir = make_reservoir(pressure=[2.0e7, 2.1e7, 2.2e7])
        _assembled(unit, reservoir, state)
        return unit, state

    def test_apply_matches_dense_blocks(self, assembled_unit):
        unit, _ = assembled_unit
        dense = np.zeros((9, 9))
        for k1, cell1 in enumerate(unit.well_cells):
            for k2, cell2 in enumerate(unit.well_cells):
                dense[3 * cell1 : 3 * cell1 + 3, 3 * cell2 : 3 * cell2 + 3] += (
                    unit.c_blocks[k1].T @ unit.inv_d @ unit.b_blocks[k2]
                )
        x = np.random.default_rng(7).normal(size=9)
        Ax = np.zeros(9)
        unit.apply(x, Ax)
        expected = -dense @ x
        assert np.any(expected != 0.0)
        np.testing.assert_allclose(Ax, expected, rtol=1e-8, atol=1e-10 * np.abs(expected).max())

    def test_schur_blocks_cover_all_connection_pairs(self, assembled_unit):
        unit, _ = assembled_unit
        pairs = [(row, col) for row, col, _ in unit.schur_blocks()]
        assert pairs == [(0, 0), (0, 2), (2, 0), (2, 2)]

    def test_recover_with_zero_update_is_a_well_iteration(self, assembled_unit):
        unit, state = assembled_unit
        recovered = state.copy()
        iterated = state.copy()
        unit.recover_well_solution_and_update_well_state(np.zeros(9), recovered)
        unit.well_eq_iteration(iterated)
        np.testing.assert_array_equal(recovered.well_solutions, iterated.well_solutions)

    def test_non_contiguous_vectors_rejected(self, assembled_unit):
        unit, _ = assembled_unit
        strided = np.zeros(18)[::2]
        with pytest.raises(ValidationError):
            unit.apply(np.ones(9), strided)
        with pytest.raises(ValidationError):
            unit.apply_to_residual(strided)
        assert not strided.any()


class TestWellEqIteration:
    def test_single_iteration_matches_inflow(self, producer, make_unit, phase_usage, reservoir):
        unit = make_unit(producer)
        state = WellState.initialize(Wells([producer]), phase_usage)
        _assembled(unit, reservoir, state)
        b_avg = np.array([1.0, 1.0, 0.01])
        assert not unit.get_well_convergence(b_avg)

        unit.well_eq_iteration(state)
        np.testing.assert_allclose(state.well_rates[0], [-5e-3, -5e-3, -0.5], rtol=1e-6)

        unit.set_well_variables(state)
        unit.assemble_well_eq(reservoir, DT, state, only_wells=True)
        assert unit.get_well_convergence(b_avg)


class TestConvergence:
    b_avg = np.array([1.0, 1.0, 0.01])

    @pytest.fixture
    def unit(self, producer, make_unit):
        return make_unit(producer)

    def test_scaled_residuals(self, unit):
        unit.residual_well[:] = [1e-5, 1e-5, 1e-7, 1.0]
        assert unit.get_well_convergence(self.b_avg)
        unit.residual_well[2] = 1e-5
        assert not unit.get_well_convergence(self.b_avg)

    def test_control_residual_relative_to_target(self, unit):
        unit.residual_well[:] = [0.0, 0.0, 0.0, 1e5]
        assert not unit.get_well_convergence(self.b_avg)

    def test_residual_floor(self, unit):
        unit.residual_well[:] = [1e-13, 1e-13, 1e-13, 0.0]
        assert unit.get_well_convergence(np.array([1e-12, 1e-12, 1e-12]))

    @pytest.mark.parametrize("value", [np.nan, np.inf, 1e8])
    def test_bad_residuals_raise(self, unit, value):
        unit.residual_well[:] = [0.0, value, 0.0, 0.0]
        with pytest.raises(ComputationError):
            unit.get_well_convergence(self.b_avg)


class TestControlSwitching:
    def test_violated_constraint_switches(self, make_well, make_unit, phase_usage):
        limit = SurfaceRateControl(value=-1e-3, distribution=(0.0, 1.0, 0.0))
        definition = make_well(
            "P1", WellType.PRODUCER, [0], controls=[BHPControl(value=1.5e7), limit]
        )
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)
        state.well_rates[0] = [-5e-3, -5e-3, -0.5]

        assert unit.update_well_control(state) == (0, 1)
        assert state.current_controls[0] == 1
        assert unit.controls.current == 1
        assert np.isclose(state.well_rates[0, 1], -1e-3)
        # the rate limit is now met, nothing else is violated
        assert unit.update_well_control(state) is None

    def test_missing_control_selection_rejected(self, make_well, make_unit, phase_usage):
        definition = make_well("P1", WellType.PRODUCER, [0], controls=RATE_LIMITED)
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)
        state.current_controls[0] = -1
        with pytest.raises(UnsupportedConfigurationError):
            unit.update_well_control(state)
        with pytest.raises(UnsupportedConfigurationError):
            unit.update_well_state_with_target(-1, state)
        with pytest.raises(UnsupportedConfigurationError):
            unit.update_well_state_with_target(2, state)

    def test_voidage_replacement_injector_is_locked(self, make_well, make_unit, phase_usage):
        producer = make_well("P1", WellType.PRODUCER, [0])
        injector = make_well(
            "I1",
            WellType.INJECTOR,
            [2],
            controls=[BHPControl(value=3.0e7)],
            composition=(1.0, 0.0, 0.0),
        )
        wells = Wells([producer, injector])
        collection = WellCollection(phase_usage)
        collection.add_group(
            "PATTERN", injection=InjectionSpecification(InjectionControlMode.VREP)
        )
        collection.add_well("P1", WellType.PRODUCER, parent="PATTERN", guide_rate=1.0)
        collection.add_well("I1", WellType.INJECTOR, parent="PATTERN", guide_rate=1.0)
        collection.set_well_indices(wells)
        collection.apply_vrep_group_controls(
            wells, np.array([0.024, 0.0]), np.array([1.0, 1.2, 0.005])
        )

        unit = make_unit(injector, index=1, first=1)
        state = WellState.initialize(wells, phase_usage)
        assert state.current_controls[1] == 1
        # above the BHP limit, which would normally force a switch
        state.bhp[1] = 4.0e7

        assert unit.update_well_control(state, collection) is None
        assert state.current_controls[1] == 1
        np.testing.assert_allclose(state.well_rates[1], [0.024, 0.0, 0.0])


class TestPotentials:
    def test_bhp_limited_producer(self, producer, make_unit, reservoir):
        unit = make_unit(producer)
        potentials = unit.compute_well_potentials(reservoir)
        np.testing.assert_allclose(potentials, [5e-3, 5e-3, 0.5], rtol=1e-10)

    def test_producer_without_bhp_limit_uses_atmospheric_pressure(
        self, make_well, make_unit, reservoir
    ):
        control = SurfaceRateControl(value=-0.01, distribution=(0.0, 1.0, 0.0))
        unit = make_unit(make_well("P1", WellType.PRODUCER, [0], controls=[control]))
        drawdown = 2.0e7 - c.STANDARD_PRESSURE
        potentials = unit.compute_well_potentials(reservoir)
        assert np.isclose(potentials[1], 1e-12 * 1e3 * drawdown, rtol=1e-10)


class TestConnectionPressures:
    def test_pressure_deltas_accumulate_downwards(self):
        deltas = compute_connection_pressure_deltas(
            np.array([10.0, 20.0, 30.0]), np.array([100.0, 200.0, 300.0]), 0.0, 10.0
        )
        np.testing.assert_allclose(deltas, [1e4, 3e4, 6e4])

    def test_densities_follow_flow_from_below(self):
        perf_rates = np.array([[-1.0, 0.0, 0.0], [0.0, -1.0, 0.0]])
        densities = compute_connection_densities(
            perf_rates,
            np.ones((2, 3)),
            np.array([1000.0, 800.0, 1.0]),
            np.array([1.0, 0.0, 0.0]),
        )
        # bottom connection sees only oil, the top one oil and water
        np.testing.assert_allclose(densities, [900.0, 800.0])

    def test_densities_without_flow_use_fallback(self):
        densities = compute_connection_densities(
            np.zeros((1, 3)),
            np.ones((1, 3)),
            np.array([1000.0, 800.0, 1.0]),
            np.array([0.5, 0.5, 0.0]),
        )
        np.testing.assert_allclose(densities, [900.0])

    def test_well_connection_pressures(self, make_unit, phase_usage, reservoir):
        definition = WellDefinition(
            name="P1",
            well_type=WellType.PRODUCER,
            perforations=[
                Perforation(cell=0, transmissibility=1e-12, depth=2000.0),
                Perforation(cell=1, transmissibility=1e-12, depth=2010.0),
            ],
            controls=WellControls(controls=[BHPControl(value=1.5e7)]),
            reference_depth=2000.0,
        )
        unit = make_unit(definition)
        state = WellState.initialize(Wells([definition]), phase_usage)
        unit.set_well_variables(state)
        unit.compute_well_connection_pressures(reservoir, state)

        mixture = np.array([1.0, 1.0, 100.0]) / 102.0
        rho = mixture @ np.array([1000.0, 800.0, 1.0]) / (mixture @ np.array([1.0, 1.0, 0.01]))
        np.testing.assert_allclose(unit.perf_densities, [rho, rho])
        np.testing.assert_allclose(unit.perf_pressure_diffs, [0.0, 10.0 * rho * c.GRAVITY])

    def test_vfp_hydrostatic_correction(self, producer, make_unit):
        table = VFPProductionTable(
            table_id=1,
            datum_depth=1500.0,
            flo_values=[0.0, 0.01],
            thp_values=[1.0e6, 2.0e6],
            bhp_values=np.zeros((2, 1, 1, 1, 2)),
        )
        unit = make_unit(producer, vfp_properties=VFPProperties.from_tables([table]))
        unit.perf_densities = np.array([800.0])
        expected = (1500.0 - 2000.0) * 800.0 * c.GRAVITY
        assert np.isclose(unit.vfp_hydrostatic_correction(1), expected)
