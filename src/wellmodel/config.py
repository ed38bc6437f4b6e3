import typing

import attrs

from wellmodel.types import (
    FluidSystem,
    IterativeSolverStr,
    PhaseUsage,
    PreconditionerStr,
    SystemStrategy,
)

__all__ = ["WellModelParameters", "Config"]


@attrs.frozen
class WellModelParameters:
    """Tolerances and limits of the well equations and their inner solve."""

    tolerance_wells: float = attrs.field(
        default=1e-4, validator=attrs.validators.gt(0)
    )
    """Tolerance for the normalized well mass balance residuals."""
    tolerance_well_control: float = attrs.field(
        default=1e-3, validator=attrs.validators.gt(0)
    )
    """
    Tolerance for the relative residual of the well control equation.

    Kept looser than `tolerance_wells` since the control equation is
    satisfied exactly once the control mode settles.
    """
    residual_floor: float = attrs.field(default=1e-12, validator=attrs.validators.ge(0))
    """Absolute residual below which a well equation counts as converged."""
    max_residual_allowed: float = attrs.field(
        default=1e7, validator=attrs.validators.gt(0)
    )
    """Well mass balance residuals above this value abort the iteration."""
    max_welleq_iter: int = attrs.field(
        default=15,
        validator=attrs.validators.and_(
            attrs.validators.ge(1), attrs.validators.le(100)
        ),
    )
    """Maximum number of iterations of the well-only inner solve."""
    solve_welleq_initially: bool = True
    """Whether to solve the well equations alone before the first coupled assembly of a step."""
    dbhp_max_rel: float = attrs.field(default=1.0, validator=attrs.validators.gt(0))
    """Maximum relative change of the bottom-hole pressure in one Newton update."""
    dwell_fraction_max: float = attrs.field(
        default=0.2,
        validator=attrs.validators.and_(attrs.validators.gt(0), attrs.validators.le(1)),
    )
    """Maximum absolute change of a well fraction variable in one Newton update."""


@attrs.frozen
class Config:
    """Simulator configuration relevant to the well model and its coupled linear solve."""

    fluid_system: FluidSystem = "blackoil"
    """Fluid system variant ('blackoil', 'oilwater', 'gasoil')."""
    preconditioner: PreconditionerStr = "cpr"
    """Preconditioner strategy for the coupled linear solve ('ilu0', 'amg', 'cpr')."""
    system_strategy: SystemStrategy = "quasiimpes"
    """Pressure decoupling strategy used by the CPR preconditioner."""
    linear_solver: IterativeSolverStr = "bicgstab"
    """Krylov solver for the coupled linear solve."""
    linear_solver_reduction: float = attrs.field(
        default=1e-2, validator=attrs.validators.gt(0)
    )
    """Relative residual reduction required from the linear solver."""
    linear_solver_max_iter: int = attrs.field(
        default=100, validator=attrs.validators.ge(1)
    )
    """Maximum number of linear solver iterations."""
    matrix_add_well_contributions: bool = True
    """
    Whether to add the Schur complement well blocks to the reservoir matrix.

    When enabled the preconditioner is built from the matrix with well
    contributions, otherwise wells are applied through the operator only.
    """
    cpr_max_ell_iter: int = attrs.field(default=1, validator=attrs.validators.ge(1))
    """Number of elliptic (AMG) cycles applied in the CPR pressure stage."""
    cpr_reuse_setup: int = attrs.field(default=3, validator=attrs.validators.ge(0))
    """
    Number of linear solves a preconditioner setup is reused for.

    0 rebuilds the preconditioner for every solve. A setup is always rebuilt
    when the sparsity pattern of the matrix changes.
    """
    well_model: WellModelParameters = attrs.field(factory=WellModelParameters)
    """Parameters of the well equations."""

    @property
    def phase_usage(self) -> PhaseUsage:
        return PhaseUsage.from_fluid_system(self.fluid_system)

    def with_parameters(self, **kwargs: typing.Any) -> "Config":
        """
        Return a copy with updated well model parameters.

        :param kwargs: `WellModelParameters` fields to change.
        :return: A new `Config`.
        """
        return attrs.evolve(self, well_model=attrs.evolve(self.well_model, **kwargs))
