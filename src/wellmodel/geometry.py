"""Representative perforation geometry derived from grid cells."""

import logging
import typing

import attrs
import numba
import numpy as np

from wellmodel.constants import c
from wellmodel.errors import (
    CellNotFoundError,
    UnsupportedConfigurationError,
    ValidationError,
)
from wellmodel.types import CompletionState, PerforationDirection, WellStatus

if typing.TYPE_CHECKING:
    from wellmodel.wells import ScheduleWell

logger = logging.getLogger(__name__)

__all__ = [
    "GridGeometry",
    "PerforationGeometry",
    "compute_perforation_geometry",
    "compute_rep_radius_perf_length",
]

_DIRECTION_CODES = {
    PerforationDirection.X: 0,
    PerforationDirection.Y: 1,
    PerforationDirection.Z: 2,
}


def _as_spacing(value: typing.Union[float, typing.Sequence[float]], count: int) -> np.ndarray:
    spacing = np.asarray(value, dtype=np.float64)
    if spacing.ndim == 0:
        spacing = np.full(count, float(spacing))
    if spacing.shape != (count,) or np.any(spacing <= 0.0):
        raise ValidationError(
            f"Cell sizes must be {count} positive values, got {spacing}."
        )
    return spacing


@attrs.define(eq=False)
class GridGeometry:
    """
    Geometry of the active cells of a corner-point or cartesian grid.

    Cells are addressed by their compressed (active) index. `global_cell`
    maps compressed indices to cartesian indices `i + nx * (j + ny * k)`.
    """

    cartesian_dimensions: typing.Tuple[int, int, int]
    """Number of cells in x, y and z."""
    global_cell: np.ndarray = attrs.field(
        converter=lambda v: np.asarray(v, dtype=np.int64)
    )
    """Cartesian index of every active cell."""
    face_centroids: typing.List[np.ndarray]
    """Face centroids of every active cell, each of shape (num_faces, 3)."""
    _compressed: typing.Dict[int, int] = attrs.field(init=False, repr=False)

    def __attrs_post_init__(self) -> None:
        if len(self.face_centroids) != self.global_cell.shape[0]:
            raise ValidationError(
                "Face centroids must be given for every active cell."
            )
        self._compressed = {
            int(cartesian): compressed
            for compressed, cartesian in enumerate(self.global_cell)
        }

    @classmethod
    def from_cartesian(
        cls,
        nx: int,
        ny: int,
        nz: int,
        dx: typing.Union[float, typing.Sequence[float]],
        dy: typing.Union[float, typing.Sequence[float]],
        dz: typing.Union[float, typing.Sequence[float]],
        active: typing.Optional[np.ndarray] = None,
    ) -> "GridGeometry":
        """
        Build the geometry of a rectilinear grid.

        :param nx: Number of cells in x.
        :param ny: Number of cells in y.
        :param nz: Number of cells in z.
        :param dx: Cell size(s) in x (m), scalar or one per column.
        :param dy: Cell size(s) in y (m), scalar or one per row.
        :param dz: Cell size(s) in z (m), scalar or one per layer.
        :param active: Optional boolean mask of shape (nx, ny, nz) of active cells.
        :return: The `GridGeometry`.
        """
        sizes = (_as_spacing(dx, nx), _as_spacing(dy, ny), _as_spacing(dz, nz))
        edges = [np.concatenate(([0.0], np.cumsum(s))) for s in sizes]
        centres = [0.5 * (e[:-1] + e[1:]) for e in edges]
        global_cell = []
        face_centroids = []
        for k in range(nz):
            for j in range(ny):
                for i in range(nx):
                    if active is not None and not active[i, j, k]:
                        continue
                    x, y, z = centres[0][i], centres[1][j], centres[2][k]
                    faces = np.array(
                        [
                            [edges[0][i], y, z],
                            [edges[0][i + 1], y, z],
                            [x, edges[1][j], z],
                            [x, edges[1][j + 1], z],
                            [x, y, edges[2][k]],
                            [x, y, edges[2][k + 1]],
                        ]
                    )
                    global_cell.append(i + nx * (j + ny * k))
                    face_centroids.append(faces)
        return cls(
            cartesian_dimensions=(nx, ny, nz),
            global_cell=np.array(global_cell, dtype=np.int64),
            face_centroids=face_centroids,
        )

    @property
    def num_cells(self) -> int:
        return self.global_cell.shape[0]

    def cartesian_index(self, i: int, j: int, k: int) -> int:
        nx, ny, _ = self.cartesian_dimensions
        return i + nx * (j + ny * k)

    def compressed_index(self, i: int, j: int, k: int) -> typing.Optional[int]:
        """
        Active cell index of a cartesian cell.

        :return: The compressed index, or None if the cell is not active.
        """
        return self._compressed.get(self.cartesian_index(i, j, k))

    def cell_dimensions(self, cell: int) -> np.ndarray:
        """
        Extent of a cell along x, y and z, from the span of its face centroids.

        :param cell: Compressed cell index.
        :return: Array (dx, dy, dz).
        """
        faces = self.face_centroids[cell]
        return faces.max(axis=0) - faces.min(axis=0)


@attrs.frozen(eq=False)
class PerforationGeometry:
    """Representative geometry of the open connections of one well."""

    cells: np.ndarray
    """Compressed cell index of each connection."""
    rep_radius: np.ndarray
    """Representative radius, sqrt(re * rw) (m)."""
    perf_length: np.ndarray
    """Perforation length along the penetration direction (m)."""
    bore_diameter: np.ndarray
    """Wellbore diameter (m)."""


@numba.njit(cache=True)
def compute_perforation_geometry(
    dx: float, dy: float, dz: float, direction: int, radius: float
) -> typing.Tuple[float, float]:
    """
    Representative radius and length of a perforation through a box shaped cell.

    The area equivalent radius `re` is taken in the plane normal to the
    penetration direction, and the representative radius is the geometric
    mean of `re` and the wellbore radius.

    :param dx: Cell extent in x.
    :param dy: Cell extent in y.
    :param dz: Cell extent in z.
    :param direction: 0 for x, 1 for y, 2 for z.
    :param radius: Wellbore radius.
    :return: (representative radius, perforation length)
    """
    if direction == 0:
        re = np.sqrt(dy * dz / np.pi)
        length = dx
    elif direction == 1:
        re = np.sqrt(dx * dz / np.pi)
        length = dy
    else:
        re = np.sqrt(dx * dy / np.pi)
        length = dz
    return np.sqrt(re * radius), length


def compute_rep_radius_perf_length(
    grid: GridGeometry,
    schedule_wells: typing.Iterable["ScheduleWell"],
) -> typing.Dict[str, PerforationGeometry]:
    """
    Derive the representative radius, perforation length and bore diameter of
    every open completion of every non-shut well.

    :param grid: Grid geometry.
    :param schedule_wells: Schedule records of the wells.
    :return: Perforation geometry per well name.
    :raises CellNotFoundError: If a completion lies in an inactive or unknown cell.
    :raises UnsupportedConfigurationError: For unknown perforation directions or completion states.
    """
    geometry: typing.Dict[str, PerforationGeometry] = {}
    for well in schedule_wells:
        if well.status is WellStatus.SHUT:
            continue

        cells: typing.List[int] = []
        rep_radius: typing.List[float] = []
        perf_length: typing.List[float] = []
        bore_diameter: typing.List[float] = []
        for completion in well.completions:
            if completion.state is CompletionState.SHUT:
                continue
            if completion.state is not CompletionState.OPEN:
                raise UnsupportedConfigurationError(
                    f"Completion state {completion.state.name} of well {well.name} "
                    f"at ({completion.i}, {completion.j}, {completion.k}) is not handled"
                )

            cell = grid.compressed_index(completion.i, completion.j, completion.k)
            if cell is None:
                raise CellNotFoundError(
                    f"Cell with i,j,k indices {completion.i} {completion.j} {completion.k} "
                    f"not found in grid (well = {well.name})"
                )

            radius = 0.5 * completion.diameter
            if radius <= 0.0:
                radius = c.DEFAULT_WELLBORE_RADIUS
                logger.warning(
                    f"Completion of well {well.name} at ({completion.i}, {completion.j}, {completion.k}) "
                    f"has no positive diameter, using a radius of {radius} m"
                )

            direction = _DIRECTION_CODES.get(completion.direction)
            if direction is None:
                raise UnsupportedConfigurationError(
                    f"Direction {completion.direction!r} of well {well.name} is not supported"
                )
            dx, dy, dz = grid.cell_dimensions(cell)
            re, length = compute_perforation_geometry(
                float(dx), float(dy), float(dz), direction, float(radius)
            )
            cells.append(cell)
            rep_radius.append(re)
            perf_length.append(length)
            bore_diameter.append(2.0 * radius)

        geometry[well.name] = PerforationGeometry(
            cells=np.array(cells, dtype=np.int64),
            rep_radius=np.array(rep_radius, dtype=np.float64),
            perf_length=np.array(perf_length, dtype=np.float64),
            bore_diameter=np.array(bore_diameter, dtype=np.float64),
        )
    return geometry
