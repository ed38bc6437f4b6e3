import enum
import typing

import attrs
import numpy as np
from scipy.sparse import csr_array, csr_matrix
from scipy.sparse.linalg import LinearOperator
from typing_extensions import TypeAlias

from wellmodel.errors import ValidationError

__all__ = [
    "Phase",
    "WellType",
    "WellStatus",
    "PerforationDirection",
    "CompletionState",
    "PhaseUsage",
    "FluidSystem",
    "PreconditionerStr",
    "Preconditioner",
    "PreconditionerFactory",
    "SystemStrategy",
    "IterativeSolverStr",
    "FloatArray",
    "IntArray",
]

FloatArray: TypeAlias = np.typing.NDArray[np.floating]
"""Array of floating point values"""
IntArray: TypeAlias = np.typing.NDArray[np.integer]
"""Array of integer values"""


class Phase(enum.IntEnum):
    """
    Canonical fluid phases.

    The integer value is the canonical position of the phase, which is
    independent of which phases are active in a given run.
    """

    WATER = 0
    OIL = 1
    GAS = 2


class WellType(enum.Enum):
    """Type of a well."""

    PRODUCER = "producer"
    INJECTOR = "injector"


class WellStatus(enum.Enum):
    """Status of a well for the current timestep."""

    OPEN = "open"
    SHUT = "shut"
    STOPPED = "stopped"
    """Well is closed at the surface but still connected to the reservoir."""


class PerforationDirection(enum.Enum):
    """Penetration direction of a well completion through its grid cell."""

    X = "x"
    Y = "y"
    Z = "z"


class CompletionState(enum.Enum):
    """State of a well completion (connection)."""

    OPEN = "open"
    SHUT = "shut"
    AUTO = "auto"


FluidSystem = typing.Literal["blackoil", "oilwater", "gasoil"]
"""
Fluid system variants

- "blackoil": water, oil and gas
- "oilwater": water and oil
- "gasoil": oil and gas
"""

_FLUID_SYSTEM_PHASES: typing.Dict[str, typing.Tuple[Phase, ...]] = {
    "blackoil": (Phase.WATER, Phase.OIL, Phase.GAS),
    "oilwater": (Phase.WATER, Phase.OIL),
    "gasoil": (Phase.OIL, Phase.GAS),
}

PreconditionerStr = typing.Literal["ilu0", "amg", "cpr"]
PreconditionerFactory = typing.Callable[
    [typing.Union[csr_array, csr_matrix]], LinearOperator
]
Preconditioner = typing.Union[
    LinearOperator, PreconditionerStr, PreconditionerFactory, str
]

SystemStrategy = typing.Literal["quasiimpes", "trueimpes", "simple"]
"""
Strategy used to decouple the pressure equation for CPR preconditioning

- "quasiimpes": weights from the diagonal blocks of the Jacobian
- "trueimpes": weights from the accumulation derivatives only
- "simple": plain sum of the component equations
"""

IterativeSolverStr = typing.Literal["gmres", "bicgstab", "lgmres"]


@attrs.frozen(slots=True)
class PhaseUsage:
    """
    Active phases of a run and the mapping from canonical phases to
    the positions used in all per-phase arrays.
    """

    phases: typing.Tuple[Phase, ...]
    """Active phases, in canonical order."""

    def __attrs_post_init__(self) -> None:
        if not self.phases:
            raise ValidationError("At least one phase must be active.")
        if list(self.phases) != sorted(set(self.phases)):
            raise ValidationError(
                "Active phases must be unique and given in canonical order (water, oil, gas)."
            )
        if Phase.OIL not in self.phases:
            raise ValidationError("The oil phase must be active.")

    @classmethod
    def from_fluid_system(cls, fluid_system: FluidSystem) -> "PhaseUsage":
        """
        Build the phase usage for a fluid system variant.

        :param fluid_system: The fluid system variant.
        :return: The `PhaseUsage` for the variant.
        """
        try:
            return cls(phases=_FLUID_SYSTEM_PHASES[fluid_system])
        except KeyError:
            raise ValidationError(
                f"Unknown fluid system {fluid_system!r}. "
                f"Available: {list(_FLUID_SYSTEM_PHASES.keys())}"
            ) from None

    @property
    def num_phases(self) -> int:
        return len(self.phases)

    def is_active(self, phase: Phase) -> bool:
        return phase in self.phases

    def position(self, phase: Phase) -> int:
        """
        Position of a phase in the per-phase arrays.

        :param phase: The canonical phase.
        :return: The active position, or -1 if the phase is not active.
        """
        try:
            return self.phases.index(phase)
        except ValueError:
            return -1
