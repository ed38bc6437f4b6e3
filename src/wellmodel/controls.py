"""Well control modes and the constraint checks used for control switching."""

import enum
import logging
import typing

import attrs
import numpy as np

from wellmodel.errors import ValidationError
from wellmodel.types import WellType

logger = logging.getLogger(__name__)

__all__ = [
    "ControlType",
    "BHPControl",
    "THPControl",
    "SurfaceRateControl",
    "ReservoirRateControl",
    "WellControl",
    "WellControls",
    "RateControl",
    "controlled_rate",
    "constraint_broken",
]


class ControlType(enum.Enum):
    """Kind of a well control."""

    BHP = "bhp"
    THP = "thp"
    SURFACE_RATE = "surface_rate"
    RESERVOIR_RATE = "reservoir_rate"


def _as_distribution(value: typing.Iterable[float]) -> typing.Tuple[float, ...]:
    distribution = tuple(float(v) for v in value)
    if any(v < 0.0 for v in distribution):
        raise ValidationError(
            f"Phase distribution entries must be non-negative, got {distribution}."
        )
    return distribution


@attrs.frozen(slots=True)
class BHPControl:
    """Bottom-hole pressure control."""

    value: float
    """Target bottom-hole pressure (Pa)."""

    type: typing.ClassVar[ControlType] = ControlType.BHP


@attrs.frozen(slots=True)
class THPControl:
    """Tubing-head pressure control, enforced through a VFP table."""

    value: float
    """Target tubing-head pressure (Pa)."""
    vfp_table: int
    """Identifier of the VFP table relating BHP to THP and rates."""
    alq: float = 0.0
    """Artificial lift quantity (producers only)."""

    type: typing.ClassVar[ControlType] = ControlType.THP


@attrs.frozen(slots=True)
class SurfaceRateControl:
    """
    Surface rate control.

    The controlled quantity is `sum(distribution[p] * rate[p])` over the active
    phases. Producer targets are negative, injector targets positive.
    """

    value: float
    """Target surface rate (m³/s)."""
    distribution: typing.Tuple[float, ...] = attrs.field(converter=_as_distribution)
    """Phase weights, one per active phase."""

    type: typing.ClassVar[ControlType] = ControlType.SURFACE_RATE


@attrs.frozen(slots=True)
class ReservoirRateControl:
    """
    Reservoir voidage rate control.

    The distribution holds the reservoir volume per surface volume of each
    phase, so the controlled quantity is the reservoir volume rate.
    """

    value: float
    """Target reservoir volume rate (m³/s)."""
    distribution: typing.Tuple[float, ...] = attrs.field(converter=_as_distribution)
    """Surface to reservoir conversion coefficients, one per active phase."""

    type: typing.ClassVar[ControlType] = ControlType.RESERVOIR_RATE


WellControl = typing.Union[BHPControl, THPControl, SurfaceRateControl, ReservoirRateControl]
"""Any of the supported well controls."""

RateControl = typing.Union[SurfaceRateControl, ReservoirRateControl]


@attrs.define
class WellControls:
    """
    Ordered list of controls of a well and the currently enforced one.

    Only one control is enforced at a time, the remaining ones act as
    constraints that trigger a switch when violated.
    """

    controls: typing.List[WellControl] = attrs.field(factory=list)
    """Controls of the well."""
    current: int = 0
    """Index of the enforced control, -1 if none is valid."""

    def __len__(self) -> int:
        return len(self.controls)

    def __getitem__(self, index: int) -> WellControl:
        return self.controls[index]

    def __iter__(self) -> typing.Iterator[WellControl]:
        return iter(self.controls)

    @property
    def current_control(self) -> typing.Optional[WellControl]:
        if 0 <= self.current < len(self.controls):
            return self.controls[self.current]
        return None

    def add(self, control: WellControl) -> int:
        """
        Append a control.

        :param control: The control to add.
        :return: Index of the new control.
        """
        self.controls.append(control)
        return len(self.controls) - 1

    def replace(self, index: int, control: WellControl) -> None:
        """Replace the control at `index`, keeping the current index."""
        self.controls[index] = control

    def find(self, control_type: ControlType) -> int:
        """
        Index of the first control of the given type.

        :param control_type: The control type to look for.
        :return: The index, or -1 if the well has no such control.
        """
        for index, control in enumerate(self.controls):
            if control.type is control_type:
                return index
        return -1

    def copy(self) -> "WellControls":
        return WellControls(controls=list(self.controls), current=self.current)


def controlled_rate(control: RateControl, rates: np.ndarray) -> float:
    """
    Rate measured by a rate control.

    :param control: A surface or reservoir rate control.
    :param rates: Surface rates of the well per active phase.
    :return: `sum(distribution * rates)`.
    """
    return float(np.dot(np.asarray(control.distribution, dtype=np.float64), rates))


def constraint_broken(
    control: WellControl,
    well_type: WellType,
    bhp: float,
    thp: float,
    rates: np.ndarray,
) -> bool:
    """
    Check whether a well violates a (non-enforced) control.

    Production rates are negative, so a producer breaks a rate limit when its
    controlled rate falls below the (negative) target.

    :param control: The control acting as a constraint.
    :param well_type: Type of the well.
    :param bhp: Current bottom-hole pressure.
    :param thp: Current tubing-head pressure.
    :param rates: Current surface rates per active phase.
    :return: True if the constraint is violated.
    """
    is_producer = well_type is WellType.PRODUCER
    if isinstance(control, BHPControl):
        return bhp < control.value if is_producer else bhp > control.value
    if isinstance(control, THPControl):
        return thp < control.value if is_producer else thp > control.value
    if isinstance(control, (SurfaceRateControl, ReservoirRateControl)):
        rate = controlled_rate(control, rates)
        return rate < control.value if is_producer else rate > control.value
    raise ValidationError(f"Unknown well control {control!r}.")
