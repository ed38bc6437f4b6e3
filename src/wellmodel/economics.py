"""
Economic limits of producers.

The evaluator compares current well rates with the per-well economic limit
configuration and produces directives to shut or stop wells and to close
their worst offending connections. It never mutates well or reservoir state,
the caller applies the directives before the next timestep.
"""

import logging
import typing

import attrs
import numba
import numpy as np

from wellmodel.types import Phase, PhaseUsage, WellType

if typing.TYPE_CHECKING:
    from wellmodel.state import WellState
    from wellmodel.wells import ScheduleWell, Wells

logger = logging.getLogger(__name__)

__all__ = [
    "EconomicLimits",
    "DynamicListEconLimited",
    "RatioCheckResult",
    "check_rate_econ_limits",
    "check_ratio_econ_limits",
    "compute_connection_water_cuts",
    "update_list_econ_limited",
]

QuantityLimit = typing.Literal["RATE", "POTN"]


def _optional_positive(value: typing.Optional[float]) -> typing.Optional[float]:
    if value is None:
        return None
    value = float(value)
    return value if value > 0.0 else None


@attrs.frozen(slots=True)
class EconomicLimits:
    """
    Economic production limits of a well for one timestep.

    A limit set to None (or a non-positive value) is not effective.
    """

    min_oil_rate: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Minimum oil surface rate (m³/s)."""
    min_gas_rate: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Minimum gas surface rate (m³/s)."""
    min_liquid_rate: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Minimum liquid (oil + water) surface rate (m³/s)."""
    min_reservoir_fluid_rate: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Minimum reservoir fluid rate (m³/s). Not enforced."""
    max_water_cut: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Maximum water cut, water / (oil + water)."""
    max_gas_oil_ratio: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Maximum gas-oil ratio. Not enforced."""
    max_water_gas_ratio: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Maximum water-gas ratio. Not enforced."""
    max_gas_liquid_ratio: typing.Optional[float] = attrs.field(
        default=None, converter=_optional_positive
    )
    """Maximum gas-liquid ratio. Not enforced."""
    quantity_limit: QuantityLimit = "RATE"
    """Whether limits apply to rates or potentials. Potentials are evaluated as rates."""
    end_run: bool = False
    """Whether the run should end when the well is closed. Not supported."""
    followon_well: typing.Optional[str] = None
    """Well to open when this one is closed. Not supported."""

    @property
    def on_min_oil_rate(self) -> bool:
        return self.min_oil_rate is not None

    @property
    def on_min_gas_rate(self) -> bool:
        return self.min_gas_rate is not None

    @property
    def on_min_liquid_rate(self) -> bool:
        return self.min_liquid_rate is not None

    @property
    def on_min_reservoir_fluid_rate(self) -> bool:
        return self.min_reservoir_fluid_rate is not None

    @property
    def on_max_water_cut(self) -> bool:
        return self.max_water_cut is not None

    @property
    def on_max_gas_oil_ratio(self) -> bool:
        return self.max_gas_oil_ratio is not None

    @property
    def on_max_water_gas_ratio(self) -> bool:
        return self.max_water_gas_ratio is not None

    @property
    def on_max_gas_liquid_ratio(self) -> bool:
        return self.max_gas_liquid_ratio is not None

    @property
    def on_any_rate_limit(self) -> bool:
        return (
            self.on_min_oil_rate
            or self.on_min_gas_rate
            or self.on_min_liquid_rate
            or self.on_min_reservoir_fluid_rate
        )

    @property
    def on_any_ratio_limit(self) -> bool:
        return (
            self.on_max_water_cut
            or self.on_max_gas_oil_ratio
            or self.on_max_water_gas_ratio
            or self.on_max_gas_liquid_ratio
        )

    @property
    def on_any_effective_limit(self) -> bool:
        return self.on_any_rate_limit or self.on_any_ratio_limit

    @property
    def valid_followon_well(self) -> bool:
        return self.followon_well not in (None, "", "'")


@attrs.define
class DynamicListEconLimited:
    """Directives produced by one evaluation of the economic limits."""

    shut_wells: typing.List[str] = attrs.field(factory=list)
    """Wells to shut completely."""
    stopped_wells: typing.List[str] = attrs.field(factory=list)
    """Wells to stop (closed at surface, still connected to the reservoir)."""
    closed_connections: typing.Dict[str, typing.List[int]] = attrs.field(factory=dict)
    """Reservoir cells of the connections to close, per well."""

    def add_shut_well(self, well_name: str) -> None:
        if well_name not in self.shut_wells:
            self.shut_wells.append(well_name)

    def add_stopped_well(self, well_name: str) -> None:
        if well_name not in self.stopped_wells:
            self.stopped_wells.append(well_name)

    def add_closed_connections_for_well(self, well_name: str, cell_index: int) -> None:
        cells = self.closed_connections.setdefault(well_name, [])
        if cell_index not in cells:
            cells.append(int(cell_index))

    def any_shut_well(self, well_name: str) -> bool:
        return well_name in self.shut_wells

    def any_stopped_well(self, well_name: str) -> bool:
        return well_name in self.stopped_wells

    def any_connection_closed(self, well_name: str) -> bool:
        return bool(self.closed_connections.get(well_name))

    def closed_connections_for_well(self, well_name: str) -> typing.List[int]:
        return list(self.closed_connections.get(well_name, []))


@attrs.frozen(slots=True)
class RatioCheckResult:
    """Outcome of the ratio limit checks for one well."""

    violated: bool
    """Whether any enforced ratio limit is violated."""
    last_connection: bool = False
    """Whether the worst offending connection is the only open one."""
    worst_offending_connection: int = -1
    """Local index of the worst offending connection."""
    violation_extent: float = 0.0
    """Ratio between the violating quantity and its limit."""


def _phase_rate(rates: np.ndarray, phase_usage: PhaseUsage, phase: Phase) -> float:
    position = phase_usage.position(phase)
    return float(rates[position]) if position >= 0 else 0.0


def check_rate_econ_limits(
    econ_limits: EconomicLimits,
    rates: np.ndarray,
    phase_usage: PhaseUsage,
    well_name: str = "",
) -> bool:
    """
    Check the minimum rate limits of a well.

    :param econ_limits: Economic limits of the well.
    :param rates: Surface rates of the well per active phase.
    :param phase_usage: Active phases.
    :param well_name: Name of the well, for logging.
    :return: True if any minimum rate limit is violated.
    """
    oil_rate = _phase_rate(rates, phase_usage, Phase.OIL)
    water_rate = _phase_rate(rates, phase_usage, Phase.WATER)

    if econ_limits.on_min_oil_rate and abs(oil_rate) < econ_limits.min_oil_rate:  # type: ignore[operator]
        return True

    if econ_limits.on_min_gas_rate:
        if phase_usage.is_active(Phase.GAS):
            gas_rate = _phase_rate(rates, phase_usage, Phase.GAS)
            if abs(gas_rate) < econ_limits.min_gas_rate:  # type: ignore[operator]
                return True
        else:
            logger.debug(
                f"Minimum gas rate limit of well {well_name} ignored, gas is not active"
            )

    if econ_limits.on_min_liquid_rate:
        liquid_rate = oil_rate + water_rate
        if abs(liquid_rate) < econ_limits.min_liquid_rate:  # type: ignore[operator]
            return True

    if econ_limits.on_min_reservoir_fluid_rate:
        logger.warning(
            f"Minimum reservoir fluid production rate limit of well {well_name} "
            "is not supported and will not be enforced"
        )
    return False


def _compute_water_cut(water_rate: float, oil_rate: float) -> float:
    liquid_rate = oil_rate + water_rate
    if liquid_rate != 0.0:
        return water_rate / liquid_rate
    return 0.0


@numba.njit(cache=True)
def compute_connection_water_cuts(water_rates: np.ndarray, oil_rates: np.ndarray) -> np.ndarray:
    """
    Water cut of every connection.

    :param water_rates: Water surface rate per connection.
    :param oil_rates: Oil surface rate per connection.
    :return: `water / (oil + water)` per connection, zero where the liquid rate is zero.
    """
    water_cuts = np.zeros(water_rates.shape[0])
    for perf in range(water_rates.shape[0]):
        liquid_rate = oil_rates[perf] + water_rates[perf]
        if liquid_rate != 0.0:
            water_cuts[perf] = water_rates[perf] / liquid_rate
    return water_cuts


def _worst_water_cut_connection(
    perf_rates: np.ndarray, phase_usage: PhaseUsage
) -> int:
    water_position = phase_usage.position(Phase.WATER)
    oil_position = phase_usage.position(Phase.OIL)
    water_cuts = compute_connection_water_cuts(
        np.ascontiguousarray(perf_rates[:, water_position], dtype=np.float64),
        np.ascontiguousarray(perf_rates[:, oil_position], dtype=np.float64),
    )
    worst_offending_connection = 0
    max_water_cut = 0.0
    for perf, water_cut in enumerate(water_cuts):
        # strict comparison so the first connection wins ties
        if water_cut > max_water_cut:
            worst_offending_connection = perf
            max_water_cut = float(water_cut)
    return worst_offending_connection


def check_ratio_econ_limits(
    econ_limits: EconomicLimits,
    rates: np.ndarray,
    perf_rates: np.ndarray,
    phase_usage: PhaseUsage,
    well_name: str = "",
) -> RatioCheckResult:
    """
    Check the maximum ratio limits of a well and find its worst offending connection.

    Only the water cut limit is enforced. When several limits are violated the
    one with the largest violation extent (value / limit) decides the connection.

    :param econ_limits: Economic limits of the well.
    :param rates: Surface rates of the well per active phase.
    :param perf_rates: Surface rates per open connection and active phase.
    :param phase_usage: Active phases.
    :param well_name: Name of the well, for logging.
    :return: The `RatioCheckResult`.
    """
    violations: typing.List[typing.Tuple[float, typing.Callable[[], int]]] = []

    if econ_limits.on_max_water_cut:
        if phase_usage.is_active(Phase.WATER):
            water_cut = _compute_water_cut(
                _phase_rate(rates, phase_usage, Phase.WATER),
                _phase_rate(rates, phase_usage, Phase.OIL),
            )
            max_water_cut = typing.cast(float, econ_limits.max_water_cut)
            if water_cut > max_water_cut:
                violations.append(
                    (
                        water_cut / max_water_cut,
                        lambda: _worst_water_cut_connection(perf_rates, phase_usage),
                    )
                )
        else:
            logger.debug(
                f"Maximum water cut limit of well {well_name} ignored, water is not active"
            )

    if econ_limits.on_max_gas_oil_ratio:
        logger.warning(
            f"The maximum gas-oil ratio limit of well {well_name} is not supported and will not be enforced"
        )
    if econ_limits.on_max_water_gas_ratio:
        logger.warning(
            f"The maximum water-gas ratio limit of well {well_name} is not supported and will not be enforced"
        )
    if econ_limits.on_max_gas_liquid_ratio:
        logger.warning(
            f"The maximum gas-liquid ratio limit of well {well_name} is not supported and will not be enforced"
        )

    if not violations:
        return RatioCheckResult(violated=False)

    violation_extent, find_worst_connection = max(violations, key=lambda v: v[0])
    number_of_connections = perf_rates.shape[0]
    if number_of_connections == 1:
        return RatioCheckResult(
            violated=True,
            last_connection=True,
            worst_offending_connection=0,
            violation_extent=violation_extent,
        )
    return RatioCheckResult(
        violated=True,
        last_connection=False,
        worst_offending_connection=find_worst_connection(),
        violation_extent=violation_extent,
    )


def update_list_econ_limited(
    schedule_wells: typing.Iterable["ScheduleWell"],
    well_state: "WellState",
    wells: "Wells",
    phase_usage: PhaseUsage,
) -> DynamicListEconLimited:
    """
    Evaluate the economic limits of all producers.

    Rate limit violations shut the well (automatic shut-in) or stop it, and
    skip the connection checks for that well. Ratio limit violations close the
    worst offending connection, and shut the well if it was the last one.

    :param schedule_wells: Schedule records holding the economic limits.
    :param well_state: Current well state.
    :param wells: Well topology, used to map connections to reservoir cells.
    :param phase_usage: Active phases.
    :return: A fresh `DynamicListEconLimited` with the directives.
    """
    list_econ_limited = DynamicListEconLimited()

    for well in schedule_wells:
        well_name = well.name
        econ_limits = well.econ_limits

        # economic limits only apply to producers
        if well.well_type is not WellType.PRODUCER:
            continue
        if not econ_limits.on_any_effective_limit:
            continue

        if econ_limits.quantity_limit == "POTN":
            logger.warning(
                f"POTN limit for well {well_name} is not supported. "
                "All the limits will be evaluated based on RATE."
            )

        if well_name not in well_state.well_map:
            logger.debug(f"Well {well_name} has no state, economic limits skipped")
            continue
        well_index, perf_start, number_of_perforations = well_state.well_map[well_name]
        rates = well_state.well_rates[well_index]

        if econ_limits.on_any_rate_limit:
            rate_limit_violated = check_rate_econ_limits(
                econ_limits, rates, phase_usage, well_name
            )
            if rate_limit_violated:
                if econ_limits.end_run:
                    logger.warning(
                        f"Ending the run after well {well_name} is closed due to economic limits is not supported"
                    )
                if econ_limits.valid_followon_well:
                    logger.warning(
                        f"Opening follow-on well {econ_limits.followon_well} after well {well_name} "
                        "is closed is not supported"
                    )
                if well.automatic_shut_in:
                    list_econ_limited.add_shut_well(well_name)
                    logger.info(f"Well {well_name} will be shut due to rate economic limit")
                else:
                    list_econ_limited.add_stopped_well(well_name)
                    logger.info(f"Well {well_name} will be stopped due to rate economic limit")
                # the well is closed, no need to check the other limits
                continue

        if not econ_limits.on_any_ratio_limit:
            continue

        perf_rates = well_state.perf_phase_rates[
            perf_start : perf_start + number_of_perforations
        ]
        ratio_check = check_ratio_econ_limits(
            econ_limits, rates, perf_rates, phase_usage, well_name
        )
        if not ratio_check.violated:
            continue

        worst_offending_connection = ratio_check.worst_offending_connection
        cell = int(wells.cells[perf_start + worst_offending_connection])
        list_econ_limited.add_closed_connections_for_well(well_name, cell)
        logger.info(
            f"Connection {worst_offending_connection} for well {well_name} will be closed due to economic limit"
        )
        if ratio_check.last_connection:
            list_econ_limited.add_shut_well(well_name)
            logger.info(f"Well {well_name} will be shut due to the last connection closed")

    return list_econ_limited
