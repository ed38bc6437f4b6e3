"""Physical constants and numerical defaults used by the well model (SI units)"""

from contextvars import ContextVar
import typing

import attrs


__all__ = ["Constant", "Constants", "c", "ConstantsContext"]

FEET = 0.3048
"""One foot in metres."""


@attrs.frozen(slots=True)
class Constant:
    """
    A constant value with optional description and unit.
    """

    value: typing.Any
    """The actual value of the constant."""

    description: typing.Optional[str] = None
    """Optional description of what this constant represents."""

    unit: typing.Optional[str] = None
    """Optional unit of measurement for this constant."""

    def __str__(self) -> str:
        return f"{self.value}{self.unit or ''}"


DEFAULT_CONSTANTS: typing.Dict[str, typing.Union[typing.Any, Constant]] = {
    "GRAVITY": Constant(
        value=9.80665, description="Standard gravitational acceleration", unit="m/s²"
    ),
    "STANDARD_PRESSURE": Constant(
        value=101325.0, description="Standard atmospheric pressure", unit="Pa"
    ),
    "DEFAULT_WELLBORE_RADIUS": Constant(
        value=0.5 * FEET,
        description="Wellbore radius used when a completion has no positive diameter",
        unit="m",
    ),
    "WELL_ACCUMULATION_VOLUME": Constant(
        value=0.1 * FEET**3,
        description="Nominal wellbore volume (0.1 ft³) used for the well accumulation term",
        unit="m³",
    ),
    "MINIMUM_BHP": Constant(
        value=1e5,
        description="Lower bound on bottom-hole pressure after a Newton update",
        unit="Pa",
    ),
    "MAXIMUM_INJECTION_BHP": Constant(
        value=6.8912e8,
        description="Bottom-hole pressure used for injector potentials without a BHP limit",
        unit="Pa",
    ),
    "WATER_RATE_SCALING": Constant(
        value=1.0, description="Scaling of the water rate in the well fractions"
    ),
    "OIL_RATE_SCALING": Constant(
        value=1.0, description="Scaling of the oil rate in the well fractions"
    ),
    "GAS_RATE_SCALING": Constant(
        value=0.01, description="Scaling of the gas rate in the well fractions"
    ),
    "GROUP_TARGET_TOLERANCE": Constant(
        value=0.01, description="Relative tolerance for meeting group targets"
    ),
    "MAX_POTENTIAL_ITERATIONS": Constant(
        value=10, description="Iteration cap for THP-limited well potentials"
    ),
}


class Constants:
    """
    Physical constants and numerical defaults used by the well model.

    All constants are stored in an internal dictionary and can be accessed via dot notation.
    Use __getattr__ for value access and __getitem__ for `Constant` object access.
    """

    __slots__ = ("_store",)

    def __new__(cls) -> "Constants":
        instance = super().__new__(cls)
        instance._store = {}
        return instance

    def __init__(self) -> None:
        for name, value in DEFAULT_CONSTANTS.items():
            if isinstance(value, Constant):
                self._store[name] = value
            else:
                self._store[name] = Constant(value=value)

    def __getattr__(self, name: str) -> typing.Any:
        """Get a constant's value using dot notation.

        :param name: Name of the constant
        :return: Value of the constant (unwrapped from Constant object)
        :raises AttributeError: If the constant does not exist
        """
        if name.startswith("_"):
            return object.__getattribute__(self, name)

        try:
            constant = self._store[name]
            return constant.value if isinstance(constant, Constant) else constant
        except KeyError:
            raise AttributeError(
                f"'{type(self).__name__}' object has no attribute '{name}'"
            ) from None

    def __getitem__(self, name: str) -> Constant:
        return self._store[name]

    def __setattr__(self, name: str, value: typing.Union[typing.Any, Constant]) -> None:
        """Set a constant value using dot notation.

        :param name: Name of the constant
        :param value: Value to set (raw value or Constant object)
        """
        if name.startswith("_"):
            object.__setattr__(self, name, value)
        elif isinstance(value, Constant):
            self._store[name] = value
        else:
            self._store[name] = Constant(value=value)

    def __contains__(self, name: str) -> bool:
        return name in self._store

    def __len__(self) -> int:
        return len(self._store)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(constants={len(self._store)})"

    def __call__(self) -> "ConstantsContext":
        """
        Create a context manager that temporarily makes this instance the one
        read through the global proxy `wellmodel.c`.

        :return: `ConstantsContext` for temporary overrides
        """
        return ConstantsContext(self)


_constants_context: ContextVar[Constants] = ContextVar(
    "constants_context", default=Constants()
)


class ConstantsContext:
    """
    Context manager for temporary global `Constants` overrides.
    """

    def __init__(self, constants: Constants) -> None:
        self._new_constants = constants
        self._token = None

    def __enter__(self) -> Constants:
        self._token = _constants_context.set(self._new_constants)
        return self._new_constants

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        if self._token is not None:
            _constants_context.reset(self._token)


class _ConstantsProxy:
    """
    Proxy class to access the current context's `Constants` instance.

    Override the current instance using the `ConstantsContext` context manager.
    """

    @property
    def _constants(self) -> Constants:
        return _constants_context.get()

    def __getattr__(self, name: str) -> typing.Any:
        return getattr(self._constants, name)

    def __getitem__(self, name: str) -> Constant:
        return self._constants[name]


c = _ConstantsProxy()
"""Global proxy to access physical constants and numerical defaults."""
