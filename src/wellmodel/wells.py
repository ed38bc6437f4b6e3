"""Well topology and schedule records."""

import typing

import attrs
import numpy as np

from wellmodel.controls import WellControls
from wellmodel.economics import EconomicLimits
from wellmodel.errors import ValidationError
from wellmodel.types import (
    CompletionState,
    PerforationDirection,
    WellStatus,
    WellType,
)

__all__ = [
    "Completion",
    "ScheduleWell",
    "Perforation",
    "WellDefinition",
    "Wells",
]


@attrs.frozen(slots=True)
class Completion:
    """A completion (connection) of a schedule well, in cartesian cell indices."""

    i: int = attrs.field(validator=attrs.validators.ge(0))
    j: int = attrs.field(validator=attrs.validators.ge(0))
    k: int = attrs.field(validator=attrs.validators.ge(0))
    diameter: float = 0.0
    """Wellbore diameter at the completion (m). Non-positive means unknown."""
    direction: PerforationDirection = PerforationDirection.Z
    """Penetration direction through the cell."""
    state: CompletionState = CompletionState.OPEN
    """Completion state."""


@attrs.frozen
class ScheduleWell:
    """Schedule (deck) record of a well for the current timestep."""

    name: str
    """Well name."""
    well_type: WellType
    """Producer or injector."""
    status: WellStatus = WellStatus.OPEN
    """Status for the current timestep."""
    completions: typing.Tuple[Completion, ...] = attrs.field(
        factory=tuple, converter=tuple
    )
    """Completions of the well, top to bottom."""
    is_multisegment: bool = False
    """Whether the well uses a multi-segment model. Not supported."""
    automatic_shut_in: bool = True
    """Whether economic limit violations shut the well (True) or stop it (False)."""
    econ_limits: EconomicLimits = attrs.field(factory=EconomicLimits)
    """Economic production limits."""


@attrs.frozen(slots=True)
class Perforation:
    """A perforation of a well into a reservoir cell."""

    cell: int = attrs.field(validator=attrs.validators.ge(0))
    """Index of the (compressed) reservoir cell."""
    transmissibility: float = attrs.field(validator=attrs.validators.ge(0))
    """Connection transmissibility factor."""
    depth: float = 0.0
    """Depth of the perforation (m, positive downwards)."""


def _as_composition(value: typing.Optional[typing.Iterable[float]]) -> typing.Optional[typing.Tuple[float, ...]]:
    if value is None:
        return None
    composition = tuple(float(v) for v in value)
    if any(v < 0.0 for v in composition) or not np.isclose(sum(composition), 1.0):
        raise ValidationError(
            f"Well composition must be non-negative and sum to one, got {composition}."
        )
    return composition


@attrs.define
class WellDefinition:
    """A well of the topology handed to the well model."""

    name: str
    """Well name."""
    well_type: WellType
    """Producer or injector."""
    perforations: typing.Tuple[Perforation, ...] = attrs.field(converter=tuple)
    """Perforations, ordered from the top of the well downwards."""
    controls: WellControls = attrs.field(factory=WellControls)
    """Controls of the well."""
    reference_depth: float = 0.0
    """Depth at which the bottom-hole pressure is defined (m)."""
    composition: typing.Optional[typing.Tuple[float, ...]] = attrs.field(
        default=None, converter=_as_composition
    )
    """Surface volume fractions of the injected fluid, one per active phase."""
    allow_crossflow: bool = True
    """Whether connections may flow opposite to the well type."""

    @property
    def number_of_perforations(self) -> int:
        return len(self.perforations)

    @property
    def is_producer(self) -> bool:
        return self.well_type is WellType.PRODUCER

    @property
    def is_injector(self) -> bool:
        return self.well_type is WellType.INJECTOR


class Wells:
    """
    Ordered, indexable collection of well definitions.

    The position of a well in this collection is its index in every per-well
    array of the well state. Perforations of all wells are stored contiguously
    in well order.
    """

    def __init__(self, wells: typing.Iterable[WellDefinition] = ()) -> None:
        self._wells: typing.List[WellDefinition] = list(wells)
        names = [well.name for well in self._wells]
        if len(set(names)) != len(names):
            raise ValidationError(f"Well names must be unique, got {names}.")
        self._index = {name: index for index, name in enumerate(names)}
        counts = [well.number_of_perforations for well in self._wells]
        self.connection_offsets = np.concatenate(
            ([0], np.cumsum(counts, dtype=np.int64))
        ).astype(np.int64)
        perforations = [perf for well in self._wells for perf in well.perforations]
        self.cells = np.array([perf.cell for perf in perforations], dtype=np.int64)
        self.transmissibilities = np.array(
            [perf.transmissibility for perf in perforations], dtype=np.float64
        )
        self.depths = np.array([perf.depth for perf in perforations], dtype=np.float64)

    def __len__(self) -> int:
        return len(self._wells)

    def __iter__(self) -> typing.Iterator[WellDefinition]:
        return iter(self._wells)

    def __getitem__(self, index: int) -> WellDefinition:
        return self._wells[index]

    def __contains__(self, name: object) -> bool:
        return name in self._index

    @property
    def number_of_wells(self) -> int:
        return len(self._wells)

    @property
    def number_of_perforations(self) -> int:
        return int(self.connection_offsets[-1])

    @property
    def names(self) -> typing.List[str]:
        return [well.name for well in self._wells]

    def index_of(self, name: str) -> int:
        """
        Index of a well by name.

        :param name: The well name.
        :return: The index of the well.
        :raises ValidationError: If the well is unknown.
        """
        try:
            return self._index[name]
        except KeyError:
            raise ValidationError(f"Unknown well {name!r}.") from None
