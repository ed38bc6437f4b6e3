"""
Vertical flow performance (VFP) tables.

A VFP table gives the bottom-hole pressure at the table datum depth as a
function of the tubing-head pressure and the well rates. Rates are passed
as signed aqua (water), liquid (oil) and vapour (gas) surface rates, only
their magnitudes are used for the lookup.
"""

import logging
import typing

import attrs
import numpy as np
from scipy.interpolate import RegularGridInterpolator  # type: ignore[import-untyped]

from wellmodel.errors import ValidationError

logger = logging.getLogger(__name__)

__all__ = [
    "VFPTable",
    "VFPProductionTable",
    "VFPInjectionTable",
    "VFPProperties",
]

ProductionFloType = typing.Literal["oil", "liquid", "gas"]
InjectionFloType = typing.Literal["water", "oil", "gas"]
WaterFractionType = typing.Literal["wct", "wor", "wgr"]
GasFractionType = typing.Literal["gor", "glr", "ogr"]


@typing.runtime_checkable
class VFPTable(typing.Protocol):
    """Protocol for a VFP table lookup."""

    table_id: int
    datum_depth: float

    def bhp(
        self, aqua: float, liquid: float, vapour: float, thp: float, alq: float = 0.0
    ) -> float:
        """
        Bottom-hole pressure at the datum depth.

        :param aqua: Water surface rate.
        :param liquid: Oil surface rate.
        :param vapour: Gas surface rate.
        :param thp: Tubing-head pressure.
        :param alq: Artificial lift quantity.
        :return: The bottom-hole pressure at the table datum depth.
        """
        ...

    def thp(
        self, aqua: float, liquid: float, vapour: float, bhp: float, alq: float = 0.0
    ) -> float:
        """Tubing-head pressure giving `bhp` at the datum depth for the given rates."""
        ...


def _as_axis(value: typing.Any) -> np.ndarray:
    axis = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if axis.ndim != 1 or axis.size == 0:
        raise ValidationError("VFP table axes must be non-empty one-dimensional arrays.")
    if axis.size > 1 and np.any(np.diff(axis) <= 0.0):
        raise ValidationError(f"VFP table axis must be strictly increasing, got {axis}.")
    return axis


class _GridInterpolator:
    """
    Multi-linear interpolation with linear extrapolation over a regular grid.

    Axes holding a single point are dropped, since the table is constant along them.
    """

    def __init__(
        self, axes: typing.Sequence[np.ndarray], values: np.ndarray
    ) -> None:
        expected_shape = tuple(axis.size for axis in axes)
        if values.shape != expected_shape:
            raise ValidationError(
                f"VFP table values have shape {values.shape}, expected {expected_shape}."
            )
        self._active = [i for i, axis in enumerate(axes) if axis.size > 1]
        reduced = values.reshape(tuple(axes[i].size for i in self._active))
        if self._active:
            self._interpolator = RegularGridInterpolator(
                points=tuple(axes[i] for i in self._active),
                values=reduced,
                method="linear",
                bounds_error=False,
                fill_value=None,  # type: ignore  # Extrapolate
            )
            self._constant = None
        else:
            self._interpolator = None
            self._constant = float(values.reshape(-1)[0])

    def __call__(self, point: typing.Sequence[float]) -> float:
        if self._interpolator is None:
            return typing.cast(float, self._constant)
        query = np.array([[point[i] for i in self._active]], dtype=np.float64)
        return float(self._interpolator(query)[0])


def _invert_increasing(axis: np.ndarray, values: np.ndarray, target: float) -> float:
    """
    Invert a piecewise linear function given at `axis` with linear extrapolation.

    :param axis: Increasing abscissae.
    :param values: Function values at `axis`.
    :param target: Function value to invert.
    :return: The abscissa where the function equals `target`.
    """
    if axis.size == 1:
        return float(axis[0])
    order = np.argsort(values, kind="stable")
    sorted_values = values[order]
    sorted_axis = axis[order]
    if target <= sorted_values[0]:
        lo, hi = 0, 1
    elif target >= sorted_values[-1]:
        lo, hi = sorted_values.size - 2, sorted_values.size - 1
    else:
        hi = int(np.searchsorted(sorted_values, target, side="right"))
        lo = hi - 1
    dv = sorted_values[hi] - sorted_values[lo]
    if dv == 0.0:
        return float(sorted_axis[lo])
    weight = (target - sorted_values[lo]) / dv
    return float(sorted_axis[lo] + weight * (sorted_axis[hi] - sorted_axis[lo]))


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator != 0.0 else 0.0


@attrs.frozen(eq=False)
class VFPProductionTable:
    """
    Production VFP table.

    `bhp_values` has shape `(n_thp, n_wfr, n_gfr, n_alq, n_flo)`.
    """

    table_id: int
    """Table identifier referenced by THP controls."""
    datum_depth: float
    """Depth the tabulated bottom-hole pressures refer to (m)."""
    flo_values: np.ndarray = attrs.field(converter=_as_axis)
    """Flow rate axis (m³/s)."""
    thp_values: np.ndarray = attrs.field(converter=_as_axis)
    """Tubing-head pressure axis (Pa)."""
    bhp_values: np.ndarray = attrs.field(converter=lambda v: np.asarray(v, dtype=np.float64))
    """Tabulated bottom-hole pressures (Pa)."""
    wfr_values: np.ndarray = attrs.field(default=(0.0,), converter=_as_axis)
    """Water fraction axis."""
    gfr_values: np.ndarray = attrs.field(default=(0.0,), converter=_as_axis)
    """Gas fraction axis."""
    alq_values: np.ndarray = attrs.field(default=(0.0,), converter=_as_axis)
    """Artificial lift axis."""
    flo_type: ProductionFloType = "liquid"
    """Rate measured by the flow axis."""
    wfr_type: WaterFractionType = "wct"
    """Water fraction definition: water cut, water-oil or water-gas ratio."""
    gfr_type: GasFractionType = "gor"
    """Gas fraction definition: gas-oil, gas-liquid or oil-gas ratio."""
    _interpolator: _GridInterpolator = attrs.field(init=False, repr=False, eq=False)

    def __attrs_post_init__(self) -> None:
        object.__setattr__(
            self,
            "_interpolator",
            _GridInterpolator(
                (
                    self.thp_values,
                    self.wfr_values,
                    self.gfr_values,
                    self.alq_values,
                    self.flo_values,
                ),
                self.bhp_values,
            ),
        )

    def _flo(self, aqua: float, liquid: float, vapour: float) -> float:
        if self.flo_type == "oil":
            return abs(liquid)
        if self.flo_type == "liquid":
            return abs(liquid) + abs(aqua)
        return abs(vapour)

    def _wfr(self, aqua: float, liquid: float, vapour: float) -> float:
        water, oil, gas = abs(aqua), abs(liquid), abs(vapour)
        if self.wfr_type == "wct":
            return _ratio(water, water + oil)
        if self.wfr_type == "wor":
            return _ratio(water, oil)
        return _ratio(water, gas)

    def _gfr(self, aqua: float, liquid: float, vapour: float) -> float:
        water, oil, gas = abs(aqua), abs(liquid), abs(vapour)
        if self.gfr_type == "gor":
            return _ratio(gas, oil)
        if self.gfr_type == "glr":
            return _ratio(gas, oil + water)
        return _ratio(oil, gas)

    def _lookup(
        self, aqua: float, liquid: float, vapour: float, thp: float, alq: float
    ) -> float:
        return self._interpolator(
            (
                thp,
                self._wfr(aqua, liquid, vapour),
                self._gfr(aqua, liquid, vapour),
                alq,
                self._flo(aqua, liquid, vapour),
            )
        )

    def bhp(
        self, aqua: float, liquid: float, vapour: float, thp: float, alq: float = 0.0
    ) -> float:
        return self._lookup(aqua, liquid, vapour, thp, alq)

    def thp(
        self, aqua: float, liquid: float, vapour: float, bhp: float, alq: float = 0.0
    ) -> float:
        values = np.array(
            [self._lookup(aqua, liquid, vapour, t, alq) for t in self.thp_values]
        )
        return _invert_increasing(self.thp_values, values, bhp)


@attrs.frozen(eq=False)
class VFPInjectionTable:
    """
    Injection VFP table.

    `bhp_values` has shape `(n_thp, n_flo)`.
    """

    table_id: int
    """Table identifier referenced by THP controls."""
    datum_depth: float
    """Depth the tabulated bottom-hole pressures refer to (m)."""
    flo_values: np.ndarray = attrs.field(converter=_as_axis)
    """Injection rate axis (m³/s)."""
    thp_values: np.ndarray = attrs.field(converter=_as_axis)
    """Tubing-head pressure axis (Pa)."""
    bhp_values: np.ndarray = attrs.field(converter=lambda v: np.asarray(v, dtype=np.float64))
    """Tabulated bottom-hole pressures (Pa)."""
    flo_type: InjectionFloType = "water"
    """Injected phase measured by the flow axis."""
    _interpolator: _GridInterpolator = attrs.field(init=False, repr=False, eq=False)

    def __attrs_post_init__(self) -> None:
        object.__setattr__(
            self,
            "_interpolator",
            _GridInterpolator((self.thp_values, self.flo_values), self.bhp_values),
        )

    def _flo(self, aqua: float, liquid: float, vapour: float) -> float:
        if self.flo_type == "water":
            return abs(aqua)
        if self.flo_type == "oil":
            return abs(liquid)
        return abs(vapour)

    def bhp(
        self, aqua: float, liquid: float, vapour: float, thp: float, alq: float = 0.0
    ) -> float:
        return self._interpolator((thp, self._flo(aqua, liquid, vapour)))

    def thp(
        self, aqua: float, liquid: float, vapour: float, bhp: float, alq: float = 0.0
    ) -> float:
        flo = self._flo(aqua, liquid, vapour)
        values = np.array([self._interpolator((t, flo)) for t in self.thp_values])
        return _invert_increasing(self.thp_values, values, bhp)


@attrs.define
class VFPProperties:
    """Collection of the VFP tables of a run, keyed by table identifier."""

    injection: typing.Dict[int, VFPTable] = attrs.field(factory=dict)
    """Injection tables."""
    production: typing.Dict[int, VFPTable] = attrs.field(factory=dict)
    """Production tables."""

    @classmethod
    def from_tables(cls, tables: typing.Iterable[VFPTable]) -> "VFPProperties":
        properties = cls()
        for table in tables:
            if isinstance(table, VFPInjectionTable):
                properties.injection[table.table_id] = table
            else:
                properties.production[table.table_id] = table
        return properties

    def get_table(self, table_id: int) -> VFPTable:
        """
        Look up a table by identifier.

        :param table_id: The table identifier.
        :return: The VFP table.
        :raises ValidationError: If no table has that identifier.
        """
        if table_id in self.production:
            return self.production[table_id]
        if table_id in self.injection:
            return self.injection[table_id]
        raise ValidationError(f"VFP table {table_id} is not defined.")

    def bhp(
        self,
        table_id: int,
        aqua: float,
        liquid: float,
        vapour: float,
        thp: float,
        alq: float = 0.0,
    ) -> float:
        return self.get_table(table_id).bhp(aqua, liquid, vapour, thp, alq)

    def thp(
        self,
        table_id: int,
        aqua: float,
        liquid: float,
        vapour: float,
        bhp: float,
        alq: float = 0.0,
    ) -> float:
        return self.get_table(table_id).thp(aqua, liquid, vapour, bhp, alq)

    def datum_depth(self, table_id: int) -> float:
        return self.get_table(table_id).datum_depth
