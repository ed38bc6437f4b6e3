"""
Group hierarchy and group control.

Groups and wells form a tree stored as an arena of nodes addressed by
integer index. Every node stores the index of its parent and the indices of
its children, the root group is always node 0. A well is controlled by its
nearest ancestor group that has an active control mode.
"""

import enum
import logging
import typing

import attrs
import numpy as np

from wellmodel.constants import c
from wellmodel.controls import (
    ReservoirRateControl,
    SurfaceRateControl,
    WellControl,
    controlled_rate,
)
from wellmodel.errors import UnsupportedConfigurationError, ValidationError
from wellmodel.types import Phase, PhaseUsage, WellType

if typing.TYPE_CHECKING:
    from wellmodel.wells import Wells

logger = logging.getLogger(__name__)

__all__ = [
    "ProductionControlMode",
    "InjectionControlMode",
    "ControlState",
    "ProductionSpecification",
    "InjectionSpecification",
    "GroupNode",
    "WellNode",
    "WellCollection",
]


class ProductionControlMode(enum.Enum):
    """Production control mode of a group."""

    NONE = "none"
    ORAT = "orat"
    WRAT = "wrat"
    GRAT = "grat"
    LRAT = "lrat"
    RESV = "resv"
    GRUP = "grup"
    """Controlled by a higher level group."""
    FLD = "fld"
    """Controlled by the field."""


class InjectionControlMode(enum.Enum):
    """Injection control mode of a group."""

    NONE = "none"
    RATE = "rate"
    RESV = "resv"
    VREP = "vrep"
    """Voidage replacement of the group's production."""
    GRUP = "grup"
    FLD = "fld"


class ControlState(enum.Enum):
    """Control state of a well node."""

    INDIVIDUAL_CONTROL = "individual"
    GROUP_CONTROL = "group"


_ACTIVE_PRODUCTION_MODES = frozenset(
    {
        ProductionControlMode.ORAT,
        ProductionControlMode.WRAT,
        ProductionControlMode.GRAT,
        ProductionControlMode.LRAT,
        ProductionControlMode.RESV,
    }
)
_ACTIVE_INJECTION_MODES = frozenset(
    {InjectionControlMode.RATE, InjectionControlMode.RESV, InjectionControlMode.VREP}
)

_PRODUCTION_MODE_PHASES: typing.Dict[ProductionControlMode, typing.Tuple[Phase, ...]] = {
    ProductionControlMode.ORAT: (Phase.OIL,),
    ProductionControlMode.WRAT: (Phase.WATER,),
    ProductionControlMode.GRAT: (Phase.GAS,),
    ProductionControlMode.LRAT: (Phase.OIL, Phase.WATER),
}


@attrs.frozen(slots=True)
class ProductionSpecification:
    """Production target of a group."""

    control_mode: ProductionControlMode = ProductionControlMode.NONE
    """Controlled quantity."""
    target: float = attrs.field(default=0.0, validator=attrs.validators.ge(0))
    """Target production (positive, m³/s at surface or reservoir conditions)."""


@attrs.frozen(slots=True)
class InjectionSpecification:
    """Injection target of a group."""

    control_mode: InjectionControlMode = InjectionControlMode.NONE
    """Controlled quantity."""
    target: float = attrs.field(default=0.0, validator=attrs.validators.ge(0))
    """Target injection rate (m³/s). Unused for VREP."""
    injector_phase: Phase = Phase.WATER
    """Injected phase."""
    voidage_replacement_fraction: float = attrs.field(
        default=1.0, validator=attrs.validators.ge(0)
    )
    """Fraction of the produced voidage to replace (VREP)."""


def _positive(instance: typing.Any, attribute: attrs.Attribute, value: float) -> None:
    if value <= 0.0:
        raise ValidationError(f"{attribute.name} must be positive, got {value}.")


@attrs.define
class GroupNode:
    """Internal node of the group tree."""

    name: str
    """Group name."""
    parent: int = -1
    """Index of the parent group, -1 for the root."""
    children: typing.List[int] = attrs.field(factory=list)
    """Indices of the child nodes."""
    efficiency_factor: float = attrs.field(default=1.0, validator=_positive)
    """Fraction of time the group is producing or injecting."""
    production: ProductionSpecification = attrs.field(factory=ProductionSpecification)
    """Production target."""
    injection: InjectionSpecification = attrs.field(factory=InjectionSpecification)
    """Injection target."""

    @property
    def is_leaf(self) -> bool:
        return False

    @property
    def controls_production(self) -> bool:
        return self.production.control_mode in _ACTIVE_PRODUCTION_MODES

    @property
    def controls_injection(self) -> bool:
        return self.injection.control_mode in _ACTIVE_INJECTION_MODES


@attrs.define
class WellNode:
    """Leaf node of the group tree, one per well."""

    name: str
    """Well name."""
    well_type: WellType
    """Producer or injector."""
    parent: int = -1
    """Index of the parent group."""
    efficiency_factor: float = attrs.field(default=1.0, validator=_positive)
    """Fraction of time the well is producing or injecting."""
    configured_guide_rate: typing.Optional[float] = None
    """Guide rate from input. None derives the guide rate from the well potentials."""
    guide_rate: float = 1.0
    """Guide rate in use."""
    well_index: int = -1
    """Index of the well in the topology, -1 when the well is not active here."""
    individual_control: bool = True
    """Whether the well is under its own controls rather than group control."""
    group_control_index: int = -1
    """Index of the group assigned control in the well's controls, -1 if none."""
    vrep_controlled: bool = False
    """Whether the well is an injector assigned to a voidage replacement group."""

    def __attrs_post_init__(self) -> None:
        if self.configured_guide_rate is not None:
            self.guide_rate = float(self.configured_guide_rate)

    @property
    def is_leaf(self) -> bool:
        return True

    @property
    def control_state(self) -> ControlState:
        if self.individual_control:
            return ControlState.INDIVIDUAL_CONTROL
        return ControlState.GROUP_CONTROL

    def sync_control_state(self, current_control: int) -> None:
        """
        Update the control state from the well's enforced control.

        The well is under group control exactly when the enforced control is
        the one assigned by its group.

        :param current_control: Index of the enforced control of the well.
        """
        self.individual_control = not (
            self.group_control_index >= 0 and current_control == self.group_control_index
        )


Node = typing.Union[GroupNode, WellNode]


class WellCollection:
    """Arena tree of groups and wells with group control logic."""

    ROOT = 0

    def __init__(self, phase_usage: PhaseUsage, field_name: str = "FIELD") -> None:
        self.phase_usage = phase_usage
        self.nodes: typing.List[Node] = [GroupNode(name=field_name)]
        self._index: typing.Dict[str, int] = {field_name: self.ROOT}
        self.group_control_applied = False
        self._vrep_targets: typing.Dict[int, float] = {}

    def __len__(self) -> int:
        return len(self.nodes)

    def _add(self, node: Node, parent: str) -> int:
        if node.name in self._index:
            raise ValidationError(f"Node {node.name!r} already exists in the well collection.")
        parent_index = self.find_node(parent)
        if parent_index is None:
            raise UnsupportedConfigurationError(
                f"Parent group {parent!r} of {node.name!r} not found in the well collection"
            )
        parent_node = self.nodes[parent_index]
        if parent_node.is_leaf:
            raise ValidationError(f"Node {node.name!r} cannot be attached to well {parent!r}.")
        node.parent = parent_index
        index = len(self.nodes)
        self.nodes.append(node)
        typing.cast(GroupNode, parent_node).children.append(index)
        self._index[node.name] = index
        return index

    def add_group(
        self,
        name: str,
        parent: typing.Optional[str] = None,
        efficiency_factor: float = 1.0,
        production: typing.Optional[ProductionSpecification] = None,
        injection: typing.Optional[InjectionSpecification] = None,
    ) -> int:
        """
        Add a group.

        :param name: Group name.
        :param parent: Parent group name, the root when not given.
        :param efficiency_factor: Group efficiency factor.
        :param production: Production target.
        :param injection: Injection target.
        :return: Index of the new node.
        """
        node = GroupNode(
            name=name,
            efficiency_factor=efficiency_factor,
            production=production or ProductionSpecification(),
            injection=injection or InjectionSpecification(),
        )
        return self._add(node, parent or self.nodes[self.ROOT].name)

    def add_well(
        self,
        name: str,
        well_type: WellType,
        parent: typing.Optional[str] = None,
        efficiency_factor: float = 1.0,
        guide_rate: typing.Optional[float] = None,
    ) -> int:
        """
        Add a well leaf.

        :param name: Well name.
        :param well_type: Producer or injector.
        :param parent: Parent group name, the root when not given.
        :param efficiency_factor: Well efficiency factor.
        :param guide_rate: Configured guide rate, None to use well potentials.
        :return: Index of the new node.
        """
        node = WellNode(
            name=name,
            well_type=well_type,
            efficiency_factor=efficiency_factor,
            configured_guide_rate=guide_rate,
        )
        return self._add(node, parent or self.nodes[self.ROOT].name)

    def find_node(self, name: str) -> typing.Optional[int]:
        return self._index.get(name)

    def node(self, index: int) -> Node:
        return self.nodes[index]

    def find_well_node(self, name: str) -> WellNode:
        """
        Find the leaf of a well.

        :param name: Well name.
        :return: The `WellNode`.
        :raises UnsupportedConfigurationError: If the well is not in the collection.
        """
        index = self._index.get(name)
        if index is None or not self.nodes[index].is_leaf:
            raise UnsupportedConfigurationError(
                f"Well {name!r} not found in the well collection"
            )
        return typing.cast(WellNode, self.nodes[index])

    def well_nodes(self) -> typing.Iterator[WellNode]:
        for node in self.nodes:
            if node.is_leaf:
                yield typing.cast(WellNode, node)

    def group_nodes(self) -> typing.Iterator[typing.Tuple[int, GroupNode]]:
        for index, node in enumerate(self.nodes):
            if not node.is_leaf:
                yield index, typing.cast(GroupNode, node)

    def leaf_nodes(self, index: int) -> typing.List[WellNode]:
        """All well leaves in the subtree of a node."""
        node = self.nodes[index]
        if node.is_leaf:
            return [typing.cast(WellNode, node)]
        leaves: typing.List[WellNode] = []
        stack = list(reversed(typing.cast(GroupNode, node).children))
        while stack:
            child = self.nodes[stack.pop()]
            if child.is_leaf:
                leaves.append(typing.cast(WellNode, child))
            else:
                stack.extend(reversed(typing.cast(GroupNode, child).children))
        return leaves

    def ancestors(self, index: int) -> typing.Iterator[int]:
        """Indices of the groups above a node, nearest first."""
        parent = self.nodes[index].parent
        while parent >= 0:
            yield parent
            parent = self.nodes[parent].parent

    def accumulative_efficiency_factor(self, name: str) -> float:
        """
        Product of the efficiency factors of a node and all its ancestors.

        :param name: Node name.
        :return: The accumulated efficiency factor.
        """
        index = self.find_node(name)
        if index is None:
            raise UnsupportedConfigurationError(
                f"Node {name!r} not found in the well collection"
            )
        factor = self.nodes[index].efficiency_factor
        for ancestor in self.ancestors(index):
            factor *= self.nodes[ancestor].efficiency_factor
        return factor

    def set_well_indices(self, wells: "Wells") -> None:
        """Bind every leaf to the index of its well in the topology."""
        for node in self.well_nodes():
            node.well_index = wells.index_of(node.name) if node.name in wells else -1

    @property
    def group_control_active(self) -> bool:
        return any(
            group.controls_production or group.controls_injection
            for _, group in self.group_nodes()
        )

    @property
    def having_vrep_groups(self) -> bool:
        return any(
            group.injection.control_mode is InjectionControlMode.VREP
            for _, group in self.group_nodes()
        )

    def _controlling_group(self, node_index: int, injection: bool) -> int:
        for ancestor in self.ancestors(node_index):
            group = typing.cast(GroupNode, self.nodes[ancestor])
            if injection and group.controls_injection:
                return ancestor
            if not injection and group.controls_production:
                return ancestor
        return -1

    def _members(self, group_index: int, injection: bool) -> typing.List[WellNode]:
        """Active wells whose nearest controlling group is `group_index`."""
        well_type = WellType.INJECTOR if injection else WellType.PRODUCER
        return [
            leaf
            for leaf in self.leaf_nodes(group_index)
            if leaf.well_type is well_type
            and leaf.well_index >= 0
            and self._controlling_group(self._index[leaf.name], injection) == group_index
        ]

    def _production_distribution(
        self, mode: ProductionControlMode, conversion_coeffs: np.ndarray
    ) -> np.ndarray:
        if mode is ProductionControlMode.RESV:
            return np.asarray(conversion_coeffs, dtype=np.float64).copy()
        distribution = np.zeros(self.phase_usage.num_phases, dtype=np.float64)
        for phase in _PRODUCTION_MODE_PHASES[mode]:
            position = self.phase_usage.position(phase)
            if position < 0:
                raise UnsupportedConfigurationError(
                    f"Group control mode {mode.name} needs the {phase.name} phase to be active"
                )
            distribution[position] = 1.0
        return distribution

    def _injection_distribution(
        self, specification: InjectionSpecification, conversion_coeffs: np.ndarray
    ) -> np.ndarray:
        position = self.phase_usage.position(specification.injector_phase)
        if position < 0:
            raise UnsupportedConfigurationError(
                f"Injected phase {specification.injector_phase.name} is not active"
            )
        distribution = np.zeros(self.phase_usage.num_phases, dtype=np.float64)
        if specification.control_mode is InjectionControlMode.RESV:
            distribution[position] = conversion_coeffs[position]
        else:
            distribution[position] = 1.0
        return distribution

    def _make_control(
        self, reservoir_rate: bool, value: float, distribution: np.ndarray
    ) -> WellControl:
        if reservoir_rate:
            return ReservoirRateControl(value=value, distribution=distribution)
        return SurfaceRateControl(value=value, distribution=distribution)

    def _assign_group_control(
        self, wells: "Wells", node: WellNode, control: WellControl
    ) -> None:
        well_controls = wells[node.well_index].controls
        if node.group_control_index < 0 or node.group_control_index >= len(well_controls):
            node.group_control_index = well_controls.add(control)
        else:
            well_controls.replace(node.group_control_index, control)
        well_controls.current = node.group_control_index
        node.individual_control = False

    def _update_group_control(
        self, wells: "Wells", node: WellNode, control: WellControl
    ) -> None:
        if node.group_control_index < 0:
            self._assign_group_control(wells, node, control)
        else:
            wells[node.well_index].controls.replace(node.group_control_index, control)

    def _guide_rates(self, members: typing.Sequence[WellNode]) -> np.ndarray:
        guide_rates = np.array([max(m.guide_rate, 0.0) for m in members], dtype=np.float64)
        total = guide_rates.sum()
        if total <= 0.0:
            return np.full(len(members), 1.0 / len(members))
        return guide_rates / total

    def _efficiency(self, node: WellNode) -> float:
        return self.accumulative_efficiency_factor(node.name)

    def apply_group_controls(self, wells: "Wells", conversion_coeffs: np.ndarray) -> None:
        """
        Put the members of every controlled group under group control.

        Each group target is split among its members by guide rate. The
        resulting control is added to the well's controls (or updated when the
        well already has one) and made the enforced control.

        :param wells: Well topology owning the controls.
        :param conversion_coeffs: Surface to reservoir conversion coefficients per active phase.
        """
        for group_index, group in self.group_nodes():
            if group.controls_production:
                members = self._members(group_index, injection=False)
                if members:
                    mode = group.production.control_mode
                    distribution = self._production_distribution(mode, conversion_coeffs)
                    shares = self._guide_rates(members) * group.production.target
                    for member, share in zip(members, shares):
                        control = self._make_control(
                            mode is ProductionControlMode.RESV,
                            -share / self._efficiency(member),
                            distribution,
                        )
                        self._assign_group_control(wells, member, control)
                    logger.debug(
                        f"Applied {mode.name} control of group {group.name} to {len(members)} producers"
                    )

            if group.injection.control_mode in (
                InjectionControlMode.RATE,
                InjectionControlMode.RESV,
            ):
                members = self._members(group_index, injection=True)
                if members:
                    distribution = self._injection_distribution(
                        group.injection, conversion_coeffs
                    )
                    shares = self._guide_rates(members) * group.injection.target
                    for member, share in zip(members, shares):
                        control = self._make_control(
                            group.injection.control_mode is InjectionControlMode.RESV,
                            share / self._efficiency(member),
                            distribution,
                        )
                        self._assign_group_control(wells, member, control)
                    logger.debug(
                        f"Applied {group.injection.control_mode.name} control of group "
                        f"{group.name} to {len(members)} injectors"
                    )
        self.group_control_applied = True

    def _group_rate(
        self,
        members: typing.Sequence[WellNode],
        well_rates: np.ndarray,
        distribution: np.ndarray,
        only_individual: bool = False,
    ) -> float:
        total = 0.0
        for member in members:
            if only_individual and not member.individual_control:
                continue
            total += float(np.dot(distribution, well_rates[member.well_index])) * self._efficiency(
                member
            )
        return total

    def update_well_targets(
        self, wells: "Wells", well_rates: np.ndarray, conversion_coeffs: np.ndarray
    ) -> None:
        """
        Redistribute group targets among the wells under group control.

        The rate of individually controlled members is subtracted from the
        group target and the remainder is split by guide rate.

        :param wells: Well topology owning the controls.
        :param well_rates: Surface rates per well and active phase.
        :param conversion_coeffs: Surface to reservoir conversion coefficients per active phase.
        """
        for group_index, group in self.group_nodes():
            if group.controls_production:
                members = self._members(group_index, injection=False)
                mode = group.production.control_mode
                distribution = self._production_distribution(mode, conversion_coeffs)
                self._redistribute(
                    wells,
                    members,
                    well_rates,
                    distribution,
                    group.production.target,
                    sign=-1.0,
                    reservoir_rate=mode is ProductionControlMode.RESV,
                )
            if group.injection.control_mode in (
                InjectionControlMode.RATE,
                InjectionControlMode.RESV,
            ):
                members = self._members(group_index, injection=True)
                distribution = self._injection_distribution(group.injection, conversion_coeffs)
                self._redistribute(
                    wells,
                    members,
                    well_rates,
                    distribution,
                    group.injection.target,
                    sign=1.0,
                    reservoir_rate=group.injection.control_mode is InjectionControlMode.RESV,
                )

    def _redistribute(
        self,
        wells: "Wells",
        members: typing.Sequence[WellNode],
        well_rates: np.ndarray,
        distribution: np.ndarray,
        target: float,
        sign: float,
        reservoir_rate: bool,
    ) -> None:
        group_controlled = [m for m in members if not m.individual_control]
        if not group_controlled:
            return
        individual_rate = sign * self._group_rate(
            members, well_rates, distribution, only_individual=True
        )
        remaining = max(target - individual_rate, 0.0)
        shares = self._guide_rates(group_controlled) * remaining
        for member, share in zip(group_controlled, shares):
            control = self._make_control(
                reservoir_rate, sign * share / self._efficiency(member), distribution
            )
            self._update_group_control(wells, member, control)

    def apply_vrep_group_controls(
        self,
        wells: "Wells",
        well_voidage_rates: np.ndarray,
        conversion_coeffs: np.ndarray,
    ) -> None:
        """
        Set the injection targets of voidage replacement groups.

        The voidage of the producers in the group's subtree, times the
        replacement fraction, is split among the group's injectors by guide
        rate and converted to a surface rate of the injected phase.

        :param wells: Well topology owning the controls.
        :param well_voidage_rates: Reservoir voidage rate per well (zero for injectors).
        :param conversion_coeffs: Surface to reservoir conversion coefficients per active phase.
        """
        for group_index, group in self.group_nodes():
            if group.injection.control_mode is not InjectionControlMode.VREP:
                continue
            leaves = self.leaf_nodes(group_index)
            voidage = sum(
                float(well_voidage_rates[leaf.well_index]) * self._efficiency(leaf)
                for leaf in leaves
                if leaf.well_type is WellType.PRODUCER and leaf.well_index >= 0
            )
            target = voidage * group.injection.voidage_replacement_fraction
            self._vrep_targets[group_index] = target
            members = self._members(group_index, injection=True)
            if not members:
                continue
            position = self.phase_usage.position(group.injection.injector_phase)
            distribution = self._injection_distribution(group.injection, conversion_coeffs)
            shares = self._guide_rates(members) * target
            for member, share in zip(members, shares):
                surface_rate = share / self._efficiency(member) / conversion_coeffs[position]
                self._assign_group_control(
                    wells,
                    member,
                    SurfaceRateControl(value=surface_rate, distribution=distribution),
                )
                member.vrep_controlled = True
            logger.debug(
                f"Voidage replacement target of group {group.name}: {target:.6e} m³/s"
            )

    def group_target_converged(
        self, well_rates: np.ndarray, conversion_coeffs: np.ndarray
    ) -> bool:
        """
        Check whether every controlled group meets its target.

        A group missing its target still counts as converged when none of its
        members is under group control, since it cannot produce or inject more.

        :param well_rates: Surface rates per well and active phase.
        :param conversion_coeffs: Surface to reservoir conversion coefficients per active phase.
        :return: True if all group targets are met.
        """
        tolerance = c.GROUP_TARGET_TOLERANCE
        for group_index, group in self.group_nodes():
            checks = []
            if group.controls_production:
                members = self._members(group_index, injection=False)
                distribution = self._production_distribution(
                    group.production.control_mode, conversion_coeffs
                )
                rate = -self._group_rate(members, well_rates, distribution)
                checks.append((members, rate, group.production.target))
            if group.controls_injection:
                members = self._members(group_index, injection=True)
                if group.injection.control_mode is InjectionControlMode.VREP:
                    position = self.phase_usage.position(group.injection.injector_phase)
                    distribution = np.zeros(self.phase_usage.num_phases)
                    distribution[position] = conversion_coeffs[position]
                    target = self._vrep_targets.get(group_index, 0.0)
                else:
                    distribution = self._injection_distribution(
                        group.injection, conversion_coeffs
                    )
                    target = group.injection.target
                rate = self._group_rate(members, well_rates, distribution)
                checks.append((members, rate, target))

            for members, rate, target in checks:
                if abs(rate - target) <= tolerance * abs(target):
                    continue
                if any(not member.individual_control for member in members):
                    logger.debug(
                        f"Group {group.name} rate {rate:.6e} misses its target {target:.6e}"
                    )
                    return False
        return True

    def require_well_potentials(self) -> bool:
        """Whether some controlled well needs its guide rate from well potentials."""
        if not self.group_control_active:
            return False
        return any(
            node.configured_guide_rate is None
            for node in self.well_nodes()
            if node.well_index >= 0
            and self._controlling_group(
                self._index[node.name], node.well_type is WellType.INJECTOR
            )
            >= 0
        )

    def set_guide_rates_with_potentials(
        self, well_potentials: np.ndarray, conversion_coeffs: np.ndarray
    ) -> None:
        """
        Derive the guide rates of wells without a configured guide rate.

        The guide rate is the well potential of the quantity controlled by the
        well's group.

        :param well_potentials: Absolute well potentials per well and active phase.
        :param conversion_coeffs: Surface to reservoir conversion coefficients per active phase.
        """
        for node in self.well_nodes():
            if node.configured_guide_rate is not None or node.well_index < 0:
                continue
            is_injector = node.well_type is WellType.INJECTOR
            group_index = self._controlling_group(self._index[node.name], is_injector)
            if group_index < 0:
                continue
            group = typing.cast(GroupNode, self.nodes[group_index])
            if is_injector:
                distribution = np.zeros(self.phase_usage.num_phases)
                distribution[self.phase_usage.position(group.injection.injector_phase)] = 1.0
            else:
                distribution = self._production_distribution(
                    group.production.control_mode, conversion_coeffs
                )
            node.guide_rate = float(np.dot(distribution, well_potentials[node.well_index]))
            logger.debug(f"Guide rate of well {node.name} set to {node.guide_rate:.6e}")

    def group_rate(
        self, name: str, well_rates: np.ndarray, control: typing.Union[SurfaceRateControl, ReservoirRateControl]
    ) -> float:
        """
        Efficiency weighted rate of all active wells below a node, as measured by a rate control.

        :param name: Node name.
        :param well_rates: Surface rates per well and active phase.
        :param control: Rate control defining the measured quantity.
        :return: The group rate.
        """
        index = self.find_node(name)
        if index is None:
            raise UnsupportedConfigurationError(
                f"Node {name!r} not found in the well collection"
            )
        return sum(
            controlled_rate(control, well_rates[leaf.well_index]) * self._efficiency(leaf)
            for leaf in self.leaf_nodes(index)
            if leaf.well_index >= 0
        )
