"""Tests for well controls and constraint checks."""

import numpy as np
import pytest

from wellmodel import (
    BHPControl,
    ControlType,
    ReservoirRateControl,
    SurfaceRateControl,
    THPControl,
    ValidationError,
    WellControls,
    WellType,
    constraint_broken,
    controlled_rate,
)


class TestWellControls:
    """Control list bookkeeping."""

    def test_find_and_current(self):
        controls = WellControls(
            controls=[
                BHPControl(value=1.5e7),
                SurfaceRateControl(value=-0.01, distribution=(0.0, 1.0, 0.0)),
            ]
        )
        assert controls.find(ControlType.BHP) == 0
        assert controls.find(ControlType.SURFACE_RATE) == 1
        assert controls.find(ControlType.THP) == -1
        assert isinstance(controls.current_control, BHPControl)

    def test_invalid_current_has_no_control(self):
        controls = WellControls(controls=[BHPControl(value=1.5e7)], current=-1)
        assert controls.current_control is None

    def test_add_keeps_current(self):
        controls = WellControls(controls=[BHPControl(value=1.5e7)])
        index = controls.add(THPControl(value=1e6, vfp_table=1))
        assert index == 1
        assert controls.current == 0
        assert len(controls) == 2

    def test_negative_distribution_rejected(self):
        with pytest.raises(ValidationError):
            SurfaceRateControl(value=-0.01, distribution=(0.0, -1.0, 0.0))


class TestConstraintBroken:
    """Violation of non-enforced controls."""

    rates = np.array([-0.002, -0.005, -0.5])

    def test_producer_bhp_limit(self):
        control = BHPControl(value=1.5e7)
        assert constraint_broken(control, WellType.PRODUCER, 1.4e7, 0.0, self.rates)
        assert not constraint_broken(control, WellType.PRODUCER, 1.6e7, 0.0, self.rates)

    def test_injector_bhp_limit(self):
        control = BHPControl(value=3.0e7)
        assert constraint_broken(control, WellType.INJECTOR, 3.1e7, 0.0, self.rates)
        assert not constraint_broken(control, WellType.INJECTOR, 2.9e7, 0.0, self.rates)

    def test_producer_rate_limit(self):
        # producing 0.005 of oil against a limit of 0.004
        control = SurfaceRateControl(value=-0.004, distribution=(0.0, 1.0, 0.0))
        assert constraint_broken(control, WellType.PRODUCER, 1.5e7, 0.0, self.rates)
        relaxed = SurfaceRateControl(value=-0.01, distribution=(0.0, 1.0, 0.0))
        assert not constraint_broken(relaxed, WellType.PRODUCER, 1.5e7, 0.0, self.rates)

    def test_injector_rate_limit(self):
        rates = np.array([0.02, 0.0, 0.0])
        control = SurfaceRateControl(value=0.01, distribution=(1.0, 0.0, 0.0))
        assert constraint_broken(control, WellType.INJECTOR, 2.5e7, 0.0, rates)

    def test_producer_thp_limit(self):
        control = THPControl(value=2e6, vfp_table=1)
        assert constraint_broken(control, WellType.PRODUCER, 1.5e7, 1e6, self.rates)
        assert not constraint_broken(control, WellType.PRODUCER, 1.5e7, 3e6, self.rates)

    def test_reservoir_rate_is_weighted_sum(self):
        control = ReservoirRateControl(value=-0.01, distribution=(1.0, 1.2, 0.005))
        expected = -0.002 - 1.2 * 0.005 - 0.005 * 0.5
        assert np.isclose(controlled_rate(control, self.rates), expected)
