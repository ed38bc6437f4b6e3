"""
Preconditioners and the linear solve of the coupled reservoir-well system.

The wells are eliminated through the Schur complement, either matrix free
through `WellModel.linear_operator` or by folding their blocks into the
reservoir matrix. The reduced system is solved with a Krylov method and one
of the ILU0, AMG or CPR preconditioners.
"""

import functools
import logging
import threading
import typing

import numpy as np
import pyamg  # type: ignore[import-untyped]
from scipy.sparse import csr_array, csr_matrix, isspmatrix_csr  # type: ignore[import-untyped]
from scipy.sparse.linalg import (  # type: ignore[import-untyped]
    LinearOperator,
    bicgstab,
    gmres,
    lgmres,
    spilu,
)

from wellmodel.config import Config
from wellmodel.errors import PreconditionerError, SolverError, ValidationError
from wellmodel.types import PreconditionerFactory, SystemStrategy

if typing.TYPE_CHECKING:
    from wellmodel.model import WellModel

logger = logging.getLogger(__name__)

__all__ = [
    "build_ilu0_preconditioner",
    "build_amg_preconditioner",
    "build_cpr_preconditioner",
    "compute_pressure_weights",
    "CachedPreconditionerFactory",
    "preconditioner_factory",
    "get_preconditioner_factory",
    "list_preconditioner_factories",
    "solve_linear_system",
    "build_preconditioner_cache",
    "solve_coupled_system",
]

SparseMatrix = typing.Union[csr_array, csr_matrix]


def _as_csr(A: typing.Any) -> csr_matrix:
    if not isspmatrix_csr(A):
        return csr_matrix(A, dtype=np.float64)
    return A


def build_ilu0_preconditioner(A_csr: SparseMatrix, **kwargs: typing.Any) -> LinearOperator:
    """
    Creates a zero fill-in incomplete LU preconditioner using `spilu`.

    :param A_csr: The coefficient matrix in CSR format.
    :param kwargs: Additional arguments for `scipy.sparse.linalg.spilu`.
    :return: A SciPy `LinearOperator` applying the ILU solve.
    """
    A_csc = _as_csr(A_csr).tocsc()
    kwargs.setdefault("drop_tol", 0.0)
    kwargs.setdefault("fill_factor", 1)
    ilu_factor = spilu(A_csc, **kwargs)
    return LinearOperator(shape=A_csc.shape, matvec=ilu_factor.solve, dtype=np.float64)  # type: ignore[arg-type]


def build_amg_preconditioner(
    A_csr: SparseMatrix, cycle: str = "V", **kwargs: typing.Any
) -> LinearOperator:
    """
    Creates an Algebraic Multigrid (AMG) preconditioner using PyAMG.

    :param A_csr: The coefficient matrix in CSR format.
    :param cycle: Multigrid cycle type ('V', 'W', 'F').
    :param kwargs: Additional arguments for `pyamg.smoothed_aggregation_solver`.
    :return: A SciPy `LinearOperator` that represents the AMG preconditioner.
    """
    ml_solver = pyamg.smoothed_aggregation_solver(_as_csr(A_csr), **kwargs)
    return ml_solver.aspreconditioner(cycle=cycle)


def compute_pressure_weights(
    A_csr: SparseMatrix,
    num_eq: int,
    pressure_variable_index: int = 0,
    strategy: SystemStrategy = "quasiimpes",
    weight_blocks: typing.Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Weights combining the equations of each cell into a pressure equation.

    The weights `w` of a cell solve `J^T w = e_p`, with `J` the diagonal block
    of the cell ("quasiimpes") or its accumulation derivatives ("trueimpes"),
    so that the combined equation is decoupled from the other variables.

    :param A_csr: Block-ordered reservoir matrix.
    :param num_eq: Number of equations per cell.
    :param pressure_variable_index: Position of the pressure in each cell block.
    :param strategy: Decoupling strategy.
    :param weight_blocks: Accumulation derivative blocks, shape (num_cells, num_eq, num_eq),
        required by "trueimpes".
    :return: Weights, shape (num_cells, num_eq).
    """
    A_csr = _as_csr(A_csr)
    num_cells = A_csr.shape[0] // num_eq
    if strategy == "simple":
        return np.ones((num_cells, num_eq), dtype=np.float64)

    if strategy == "trueimpes":
        if weight_blocks is None:
            raise ValidationError(
                "The 'trueimpes' strategy needs the accumulation derivative blocks."
            )
        blocks = np.asarray(weight_blocks, dtype=np.float64)
    elif strategy == "quasiimpes":
        blocks = np.empty((num_cells, num_eq, num_eq), dtype=np.float64)
        for cell in range(num_cells):
            start = cell * num_eq
            blocks[cell] = A_csr[start : start + num_eq, start : start + num_eq].toarray()
    else:
        raise ValidationError(f"Unknown system strategy {strategy!r}.")

    unit = np.zeros(num_eq, dtype=np.float64)
    unit[pressure_variable_index] = 1.0
    weights = np.empty((num_cells, num_eq), dtype=np.float64)
    for cell in range(num_cells):
        try:
            weights[cell] = np.linalg.solve(blocks[cell].T, unit)
        except np.linalg.LinAlgError:
            # singular block, fall back to the plain sum of the equations
            weights[cell] = 1.0
    scale = np.abs(weights).max(axis=1)
    scale[scale == 0.0] = 1.0
    return weights / scale[:, None]


_CPR_AMG_KWARGS = {
    "max_coarse": 500,
    "presmoother": ("gauss_seidel", {"sweep": "symmetric", "iterations": 1}),
    "postsmoother": ("gauss_seidel", {"sweep": "symmetric", "iterations": 1}),
}
"""Default AMG parameters for the CPR pressure stage."""


def build_cpr_preconditioner(
    A_csr: SparseMatrix,
    *,
    num_eq: int = 3,
    pressure_variable_index: int = 0,
    strategy: SystemStrategy = "quasiimpes",
    weight_blocks: typing.Optional[np.ndarray] = None,
    max_ell_iter: int = 1,
    amg_kwargs: typing.Optional[typing.Dict[str, typing.Any]] = None,
    ilu_kwargs: typing.Optional[typing.Dict[str, typing.Any]] = None,
) -> LinearOperator:
    """
    Creates a Constrained Pressure Residual (CPR) preconditioner.

    Stage 1 solves a decoupled pressure equation with AMG, stage 2 smooths
    the remaining residual of the full system with ILU0.

    :param A_csr: The full block-ordered matrix in CSR format.
    :param num_eq: Number of equations (and unknowns) per cell.
    :param pressure_variable_index: Position of the pressure in each cell block.
    :param strategy: Pressure decoupling strategy.
    :param weight_blocks: Accumulation derivative blocks for "trueimpes".
    :param max_ell_iter: Number of AMG cycles of the pressure stage.
    :param amg_kwargs: Keyword arguments for `pyamg.smoothed_aggregation_solver`.
    :param ilu_kwargs: Keyword arguments for `scipy.sparse.linalg.spilu`.
    :return: A SciPy `LinearOperator` implementing the CPR preconditioner.
    :raises PreconditionerError: If the AMG or ILU setup fails.
    """
    A_csr = _as_csr(A_csr)
    size = A_csr.shape[0]
    if size % num_eq != 0:
        raise ValidationError(
            f"Matrix of size {size} is not block ordered with {num_eq} equations per cell."
        )
    num_cells = size // num_eq
    weights = compute_pressure_weights(
        A_csr, num_eq, pressure_variable_index, strategy, weight_blocks
    )

    cells = np.arange(num_cells, dtype=np.int64)
    # restriction combines the equations of a cell, prolongation injects into the pressure slot
    restriction = csr_matrix(
        (
            weights.ravel(),
            (np.repeat(cells, num_eq), np.arange(size, dtype=np.int64)),
        ),
        shape=(num_cells, size),
    )
    pressure_dofs = cells * num_eq + pressure_variable_index
    prolongation = csr_matrix(
        (np.ones(num_cells), (pressure_dofs, cells)), shape=(size, num_cells)
    )
    A_pp = csr_matrix(restriction @ A_csr @ prolongation)

    try:
        M_amg = build_amg_preconditioner(A_pp, **(amg_kwargs or dict(_CPR_AMG_KWARGS)))
    except Exception as exc:
        raise PreconditionerError(f"AMG construction for pressure block failed: {exc}") from exc
    try:
        M_ilu = build_ilu0_preconditioner(A_csr, **(ilu_kwargs or {}))
    except Exception as exc:
        raise PreconditionerError(f"ILU factorization failed for CPR: {exc}") from exc

    def matvec(residual: np.ndarray) -> np.ndarray:
        residual = np.asarray(residual, dtype=np.float64).ravel()
        r_p = restriction @ residual
        z_p = np.zeros(num_cells, dtype=np.float64)
        for _ in range(max_ell_iter):
            z_p += M_amg @ (r_p - A_pp @ z_p)
        z = prolongation @ z_p
        w = residual - A_csr @ z
        return z + M_ilu @ w

    return LinearOperator(shape=A_csr.shape, matvec=matvec, dtype=np.float64)  # type: ignore[arg-type]


class CachedPreconditionerFactory:
    """
    Preconditioner factory reusing its setup over several solves.

    The preconditioner is rebuilt every `update_frequency` calls, and always
    when the sparsity pattern of the matrix changes.
    """

    def __init__(
        self,
        factory: typing.Union[str, PreconditionerFactory],
        name: typing.Optional[str] = None,
        update_frequency: int = 3,
    ) -> None:
        """
        :param factory: Preconditioner factory function or registered name.
        :param name: Name of the cached factory.
        :param update_frequency: Rebuild every N calls (0 rebuilds on every call).
        """
        if isinstance(factory, str):
            self.factory = get_preconditioner_factory(factory)
            self._name = name or factory
        else:
            self.factory = factory
            self._name = name or getattr(factory, "__name__", repr(factory))
        self.update_frequency = update_frequency
        self._cached_M: typing.Optional[LinearOperator] = None
        self._cached_pattern: typing.Optional[typing.Tuple[np.ndarray, np.ndarray]] = None
        self._call_count = 0

    @property
    def name(self) -> str:
        return self._name

    def __call__(self, A_csr: SparseMatrix) -> LinearOperator:
        A_csr = _as_csr(A_csr)
        if self._should_recompute(A_csr):
            logger.debug(f"Rebuilding {self._name} preconditioner (call #{self._call_count})")
            self._cached_M = self.factory(A_csr)
            self._cached_pattern = (A_csr.indptr.copy(), A_csr.indices.copy())
            self._call_count = 0
        else:
            logger.debug(
                f"Reusing cached {self._name} preconditioner (call #{self._call_count}/"
                f"{self.update_frequency})"
            )
        self._call_count += 1
        return typing.cast(LinearOperator, self._cached_M)

    def _should_recompute(self, A_csr: csr_matrix) -> bool:
        if self._cached_M is None or self._cached_pattern is None:
            return True
        if self.update_frequency == 0 or self._call_count >= self.update_frequency:
            return True
        indptr, indices = self._cached_pattern
        return not (
            np.array_equal(indptr, A_csr.indptr) and np.array_equal(indices, A_csr.indices)
        )

    def reset(self) -> None:
        """Clear the cache and force a rebuild on the next call."""
        self._cached_M = None
        self._cached_pattern = None
        self._call_count = 0


_preconditioner_registry_lock = threading.Lock()
_PRECONDITIONER_FACTORIES: typing.Dict[str, PreconditionerFactory] = {
    "ilu0": build_ilu0_preconditioner,
    "amg": build_amg_preconditioner,
    "cpr": build_cpr_preconditioner,
}
"""Registered preconditioner factory functions."""

_SOLVER_FUNCS: typing.Dict[str, typing.Callable[..., typing.Tuple[np.ndarray, int]]] = {
    "bicgstab": bicgstab,
    "gmres": gmres,
    "lgmres": lgmres,
}
"""Krylov solvers by name."""


def preconditioner_factory(
    func: typing.Optional[PreconditionerFactory] = None,
    name: typing.Optional[str] = None,
    override: bool = False,
) -> typing.Any:
    """
    Decorator to register a preconditioner factory function.

    :param func: The preconditioner factory to register.
    :param name: Name to register under, the function's `__name__` by default.
    :param override: Whether to replace an existing factory of the same name.
    :return: The original function, unmodified.
    """

    def decorator(func: PreconditionerFactory) -> PreconditionerFactory:
        with _preconditioner_registry_lock:
            key = name or getattr(func, "__name__", None)
            if not key:
                raise ValidationError(
                    "Preconditioner factory must have a `__name__` attribute or a name must be provided."
                )
            if not override and key in _PRECONDITIONER_FACTORIES:
                raise ValidationError(
                    f"Preconditioner factory {key!r} is already registered. "
                    "Use `override=True` to replace it."
                )
            _PRECONDITIONER_FACTORIES[key] = func
        return func

    if func is not None:
        return decorator(func)
    return decorator


def list_preconditioner_factories() -> typing.List[str]:
    with _preconditioner_registry_lock:
        return list(_PRECONDITIONER_FACTORIES.keys())


def get_preconditioner_factory(name: str) -> PreconditionerFactory:
    """
    Get a registered preconditioner factory by name.

    :raises ValidationError: If the preconditioner factory is unknown.
    """
    with _preconditioner_registry_lock:
        if name not in _PRECONDITIONER_FACTORIES:
            raise ValidationError(
                f"Unknown preconditioner factory: {name!r}. "
                f"Available preconditioners: {list(_PRECONDITIONER_FACTORIES.keys())}"
            )
        return _PRECONDITIONER_FACTORIES[name]


def solve_linear_system(
    A: typing.Any,
    b: np.ndarray,
    max_iterations: int,
    rtol: float = 1e-6,
    atol: float = 0.0,
    solver: typing.Union[str, typing.Sequence[str]] = "bicgstab",
    M: typing.Optional[LinearOperator] = None,
) -> np.ndarray:
    """
    Solve `A x = b` with one or more Krylov solvers, tried in order.

    :param A: Matrix or `LinearOperator`.
    :param b: Right-hand side.
    :param max_iterations: Maximum number of iterations of each solver.
    :param rtol: Relative residual reduction.
    :param atol: Absolute residual tolerance.
    :param solver: Solver name or names ("bicgstab", "gmres", "lgmres").
    :param M: Preconditioner.
    :return: The solution.
    :raises SolverError: If no solver converged.
    """
    names = [solver] if isinstance(solver, str) else list(solver)
    for name in names:
        solver_func = _SOLVER_FUNCS.get(name)
        if solver_func is None:
            raise ValidationError(
                f"Unknown solver type: {name!r}. Available solvers: {list(_SOLVER_FUNCS.keys())}"
            )
        x, info = solver_func(A, b, M=M, rtol=rtol, atol=atol, maxiter=max_iterations)
        if info == 0:
            return np.ascontiguousarray(x)
        logger.warning(
            f"Solver {name!r} failed to converge within {max_iterations} iterations. Info: {info}"
        )
    raise SolverError(f"All solvers failed to converge within {max_iterations} iterations.")


def _build_preconditioner_factory(config: Config, num_eq: int, pressure_variable_index: int) -> PreconditionerFactory:
    factory = get_preconditioner_factory(config.preconditioner)
    if factory is build_cpr_preconditioner:
        return functools.partial(
            build_cpr_preconditioner,
            num_eq=num_eq,
            pressure_variable_index=pressure_variable_index,
            strategy=config.system_strategy,
            max_ell_iter=config.cpr_max_ell_iter,
        )
    return factory


def build_preconditioner_cache(
    config: Config, num_eq: int, pressure_variable_index: int = 0
) -> CachedPreconditionerFactory:
    """
    Cached factory of the configured preconditioner.

    The setup is reused for `config.cpr_reuse_setup` solves.

    :param config: Simulator configuration.
    :param num_eq: Number of equations per cell.
    :param pressure_variable_index: Position of the pressure in each cell block.
    :return: The `CachedPreconditionerFactory`, to be passed to `solve_coupled_system`.
    """
    return CachedPreconditionerFactory(
        _build_preconditioner_factory(config, num_eq, pressure_variable_index),
        name=config.preconditioner,
        update_frequency=config.cpr_reuse_setup,
    )


def solve_coupled_system(
    jacobian: SparseMatrix,
    residual: np.ndarray,
    well_model: "WellModel",
    config: Config,
    pressure_variable_index: int = 0,
    preconditioner_cache: typing.Optional[CachedPreconditionerFactory] = None,
) -> np.ndarray:
    """
    Solve the reservoir system with the wells eliminated.

    Solves `(A - C^T D^-1 B) dx = r - C^T D^-1 r_well`. The well update is
    recovered afterwards with `WellModel.recover_well_solution_and_update_well_state`.

    :param jacobian: Reservoir Jacobian `A`, block ordered per cell.
    :param residual: Reservoir residual `r`.
    :param well_model: Assembled well model.
    :param config: Simulator configuration.
    :param pressure_variable_index: Position of the pressure in each cell block.
    :param preconditioner_cache: Cached factory to reuse the preconditioner setup
        over several solves, see `build_preconditioner_cache`. The
        preconditioner is built from scratch when not given.
    :return: The reservoir update `dx` (to be subtracted from the primary variables).
    """
    A_csr = _as_csr(jacobian)
    num_eq = well_model.phase_usage.num_phases
    rhs = np.array(residual, dtype=np.float64, copy=True).ravel()
    well_model.apply(rhs)

    if config.matrix_add_well_contributions:
        matrix = well_model.add_well_contributions(A_csr)
        operator: typing.Any = matrix
    else:
        matrix = A_csr
        operator = well_model.linear_operator(A_csr)

    try:
        if preconditioner_cache is not None:
            M = preconditioner_cache(matrix)
        else:
            M = _build_preconditioner_factory(config, num_eq, pressure_variable_index)(matrix)
    except PreconditionerError:
        raise
    except Exception as exc:
        raise PreconditionerError(f"Error building preconditioner: {exc}") from exc

    return solve_linear_system(
        operator,
        rhs,
        max_iterations=config.linear_solver_max_iter,
        rtol=config.linear_solver_reduction,
        solver=config.linear_solver,
        M=M,
    )
