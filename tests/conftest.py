"""
Shared fixtures for the well model tests.

The default reservoir holds a few cells at about 200 bar with unit formation
volume factors for water and oil, and a gas inverse formation volume factor of
100. With equal phase mobilities a producer then flows water, oil and gas in
the ratio 1:1:100, which matches the uniform initial well fractions once the
gas rate scaling of 0.01 is applied.
"""

import typing

import numpy as np
import pytest

from wellmodel import (
    BHPControl,
    Config,
    Perforation,
    PhaseUsage,
    ReservoirState,
    ReservoirSystem,
    ScheduleWell,
    StandardWell,
    WellControl,
    WellControls,
    WellDefinition,
    WellModel,
    Wells,
    WellState,
    WellType,
    c,
)

RESERVOIR_PRESSURE = 2.0e7
PRODUCER_BHP = 1.5e7
INJECTOR_BHP = 2.5e7
TRANSMISSIBILITY = 1e-12
MOBILITY = 1e3
DEPTH = 2000.0
DT = 86400.0


@pytest.fixture
def phase_usage() -> PhaseUsage:
    return PhaseUsage.from_fluid_system("blackoil")


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def make_reservoir():
    def _make(
        num_cells: int = 3,
        pressure: typing.Union[float, typing.Sequence[float]] = RESERVOIR_PRESSURE,
        mobility: typing.Sequence[float] = (MOBILITY, MOBILITY, MOBILITY),
        inv_b: typing.Sequence[float] = (1.0, 1.0, 100.0),
    ) -> ReservoirState:
        pressures = np.broadcast_to(np.asarray(pressure, dtype=np.float64), (num_cells,))
        return ReservoirState(
            pressure=pressures.copy(),
            mobility=np.tile(np.asarray(mobility, dtype=np.float64), (num_cells, 1)),
            inv_b=np.tile(np.asarray(inv_b, dtype=np.float64), (num_cells, 1)),
            surface_density=np.array([1000.0, 800.0, 1.0]),
            depth=np.full(num_cells, DEPTH),
            pore_volume=np.ones(num_cells),
        )

    return _make


@pytest.fixture
def reservoir(make_reservoir) -> ReservoirState:
    return make_reservoir()


@pytest.fixture
def make_well():
    def _make(
        name: str,
        well_type: WellType,
        cells: typing.Sequence[int],
        controls: typing.Optional[typing.Sequence[WellControl]] = None,
        composition: typing.Optional[typing.Sequence[float]] = None,
        allow_crossflow: bool = True,
        transmissibility: float = TRANSMISSIBILITY,
    ) -> WellDefinition:
        if controls is None:
            bhp = PRODUCER_BHP if well_type is WellType.PRODUCER else INJECTOR_BHP
            controls = [BHPControl(value=bhp)]
        return WellDefinition(
            name=name,
            well_type=well_type,
            perforations=[
                Perforation(cell=cell, transmissibility=transmissibility, depth=DEPTH)
                for cell in cells
            ],
            controls=WellControls(controls=list(controls)),
            reference_depth=DEPTH,
            composition=composition,
            allow_crossflow=allow_crossflow,
        )

    return _make


@pytest.fixture
def producer(make_well) -> WellDefinition:
    return make_well("PROD", WellType.PRODUCER, [0])


@pytest.fixture
def injector(make_well) -> WellDefinition:
    return make_well("INJ", WellType.INJECTOR, [2], composition=(1.0, 0.0, 0.0))


def _schedule_for(well: WellDefinition, **kwargs: typing.Any) -> ScheduleWell:
    return ScheduleWell(name=well.name, well_type=well.well_type, **kwargs)


@pytest.fixture
def make_unit(phase_usage, config):
    """Initialised `StandardWell` of a well definition."""

    def _make(definition, index=0, first=0, num_cells=3, vfp_properties=None):
        unit = StandardWell(
            definition,
            ScheduleWell(name=definition.name, well_type=definition.well_type),
            index_of_well=index,
            first_perforation=first,
            config=config,
        )
        unit.init(phase_usage, vfp_properties, c.GRAVITY, num_cells)
        return unit

    return _make


@pytest.fixture
def make_model(phase_usage):
    def _make(
        definitions: typing.Sequence[WellDefinition],
        num_cells: int = 3,
        config: typing.Optional[Config] = None,
        **kwargs: typing.Any,
    ) -> typing.Tuple[WellModel, Wells, WellState]:
        wells = Wells(definitions)
        model = WellModel(
            wells,
            [_schedule_for(definition) for definition in definitions],
            config=config,
            **kwargs,
        )
        model.init(phase_usage, c.GRAVITY, num_cells)
        well_state = WellState.initialize(
            wells, phase_usage, np.full(num_cells, RESERVOIR_PRESSURE)
        )
        return model, wells, well_state

    return _make


@pytest.fixture
def system() -> ReservoirSystem:
    return ReservoirSystem(num_cells=3, num_eq=3)
