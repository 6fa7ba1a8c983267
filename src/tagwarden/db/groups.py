"""Asset Group Hierarchy.

Tenant-scoped groups of assets arranged in a forest via
``parent_group_id``. Static groups are edited member by member; dynamic
groups derive their membership from ``GroupRules`` and are only ever
rebuilt wholesale by ``recompute_dynamic_group``.

``member_count`` is adjusted in the same transaction as every membership
write, by the number of rows actually changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, delete, update
from sqlmodel import col, select

from tagwarden.cache import get_cache_gateway
from tagwarden.config import get_settings
from tagwarden.db.engine import get_session
from tagwarden.db.entities import EntityRef, require_entities
from tagwarden.db.models import (
    Asset,
    AssetGroup,
    AssetGroupMember,
    EntityKind,
    GroupRules,
    GroupType,
    _utcnow,
)
from tagwarden.db.tags import require_organization, validate_color, validate_name
from tagwarden.errors import Conflict, NotFound, ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import datetime
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

logger = logging.getLogger(__name__)

MAX_GROUP_NAME_LENGTH = 100


@dataclass
class GroupNode:
    """A group with its children attached, as returned by ``get_tree``."""

    group: AssetGroup
    children: list[GroupNode] = field(default_factory=list)

    def walk(self) -> Iterable[GroupNode]:
        """Yield this node and its descendants depth-first."""
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True)
class MoveResult:
    removed: int
    added: int


# ── Helpers ──────────────────────────────────────────────────────────


def parse_group_type(group_type: GroupType | str) -> GroupType:
    try:
        return GroupType(group_type)
    except ValueError:
        msg = f"Unknown group type {group_type!r}"
        raise ValidationError(msg) from None


def parse_rules(rules: GroupRules | Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate a rule payload and return its stored form.

    A dynamic group without at least one predicate would match every
    asset in the tenant, so empty rules are rejected.
    """
    if rules is None:
        msg = "Dynamic groups require rules"
        raise ValidationError(msg)
    try:
        parsed = (
            rules if isinstance(rules, GroupRules) else GroupRules.model_validate(rules)
        )
    except PydanticValidationError as exc:
        msg = f"Malformed group rules: {exc.errors()[0]['msg']}"
        raise ValidationError(msg) from exc
    if not parsed.predicates():
        msg = "Dynamic group rules must set at least one predicate"
        raise ValidationError(msg)
    return parsed.model_dump(exclude_none=True)


async def load_group(
    session: AsyncSession, group_id: UUID, organization_id: UUID
) -> AssetGroup:
    group = await session.get(AssetGroup, group_id)
    if group is None or group.organization_id != organization_id:
        msg = f"Asset group {group_id} not found"
        raise NotFound(msg)
    return group


async def _ensure_name_free(
    session: AsyncSession, organization_id: UUID, name: str
) -> None:
    result = await session.exec(
        select(AssetGroup.id).where(
            AssetGroup.organization_id == organization_id, AssetGroup.name == name
        )
    )
    if result.first() is not None:
        msg = f"Asset group {name!r} already exists"
        raise Conflict(msg)


async def _ancestors(
    session: AsyncSession, group: AssetGroup, limit: int | None = None
) -> list[AssetGroup]:
    """Walk ``parent_group_id`` upwards from *group* (exclusive), nearest first.

    Stops at a root, after *limit* steps when given, or on the first
    revisited node.
    """
    chain: list[AssetGroup] = []
    seen = {group.id}
    parent_id = group.parent_group_id
    while parent_id is not None and (limit is None or len(chain) < limit):
        if parent_id in seen:
            logger.warning(
                "Cycle detected in asset group ancestry at %s (org=%s)",
                parent_id,
                group.organization_id,
            )
            break
        parent = await session.get(AssetGroup, parent_id)
        if parent is None:
            break
        seen.add(parent.id)
        chain.append(parent)
        parent_id = parent.parent_group_id
    return chain


async def _subtree_height(session: AsyncSession, group: AssetGroup) -> int:
    """Number of levels below *group*; 0 for a leaf."""
    result = await session.exec(
        select(AssetGroup.id, AssetGroup.parent_group_id).where(
            AssetGroup.organization_id == group.organization_id,
            col(AssetGroup.parent_group_id).is_not(None),
        )
    )
    children: dict[UUID, list[UUID]] = {}
    for child_id, parent_id in result.all():
        children.setdefault(parent_id, []).append(child_id)

    height = 0
    seen = {group.id}
    level = [group.id]
    while True:
        level = [
            child
            for node in level
            for child in children.get(node, [])
            if child not in seen
        ]
        if not level:
            return height
        seen.update(level)
        height += 1


async def _validate_parent(
    session: AsyncSession,
    group: AssetGroup | None,
    parent_group_id: UUID,
    organization_id: UUID,
) -> AssetGroup:
    """Check a prospective parent is in the tenant and keeps the forest sound.

    Rejects cycles, and placements that would put *group* or any of its
    descendants more than ``governance.max_group_depth`` levels deep.
    """
    if group is not None and parent_group_id == group.id:
        msg = "A group cannot be its own parent"
        raise ValidationError(msg)

    parent = await load_group(session, parent_group_id, organization_id)
    max_depth = get_settings().governance.max_group_depth
    chain = await _ancestors(session, parent, max_depth)
    if group is not None and any(node.id == group.id for node in chain):
        msg = f"Moving group under {parent.name!r} would create a cycle"
        raise ValidationError(msg)

    height = await _subtree_height(session, group) if group is not None else 0
    # ancestors of the parent, the parent, the group, then its deepest descendant
    if len(chain) + 2 + height > max_depth:
        msg = f"Group nesting deeper than {max_depth} levels"
        raise ValidationError(msg)
    return parent


async def apply_member_delta(
    session: AsyncSession, group_id: UUID, delta: int
) -> None:
    if not delta:
        return
    adjusted = col(AssetGroup.member_count) + delta
    await session.execute(
        update(AssetGroup)
        .where(col(AssetGroup.id) == group_id)
        .values(
            member_count=case((adjusted < 0, 0), else_=adjusted),
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


async def _require_static_group(
    session: AsyncSession, group_id: UUID, organization_id: UUID
) -> AssetGroup:
    group = await load_group(session, group_id, organization_id)
    if group.is_dynamic:
        msg = f"Membership of dynamic group {group.name!r} is computed from rules"
        raise ValidationError(msg)
    return group


async def _require_assets(
    session: AsyncSession, asset_ids: Iterable[UUID], organization_id: UUID
) -> list[UUID]:
    ids = list(dict.fromkeys(asset_ids))
    refs = [EntityRef(EntityKind.ASSET, asset_id) for asset_id in ids]
    await require_entities(session, refs, organization_id)
    return ids


async def _insert_members(
    session: AsyncSession,
    group_id: UUID,
    asset_ids: list[UUID],
    added_by: UUID,
    *,
    notes: str | None = None,
    expires_at: datetime | None = None,
) -> list[UUID]:
    if not asset_ids:
        return []
    result = await session.exec(
        select(AssetGroupMember.asset_id).where(
            AssetGroupMember.group_id == group_id,
            col(AssetGroupMember.asset_id).in_(asset_ids),
        )
    )
    present = set(result.all())
    added = [asset_id for asset_id in asset_ids if asset_id not in present]
    for asset_id in added:
        session.add(
            AssetGroupMember(
                group_id=group_id,
                asset_id=asset_id,
                added_by=added_by,
                notes=notes,
                expires_at=expires_at,
            )
        )
    await session.flush()
    await apply_member_delta(session, group_id, len(added))
    return added


async def _delete_members(
    session: AsyncSession, group_id: UUID, asset_ids: list[UUID]
) -> list[UUID]:
    if not asset_ids:
        return []
    result = await session.exec(
        select(AssetGroupMember.id, AssetGroupMember.asset_id).where(
            AssetGroupMember.group_id == group_id,
            col(AssetGroupMember.asset_id).in_(asset_ids),
        )
    )
    rows = list(result.all())
    if rows:
        await session.execute(
            delete(AssetGroupMember).where(
                col(AssetGroupMember.id).in_([row_id for row_id, _ in rows])
            )
        )
    await apply_member_delta(session, group_id, -len(rows))
    return [asset_id for _, asset_id in rows]


async def _clear_members(session: AsyncSession, group_id: UUID) -> int:
    """Delete every membership of a group; the caller owns ``member_count``."""
    result = await session.exec(
        select(AssetGroupMember.id).where(AssetGroupMember.group_id == group_id)
    )
    member_ids = list(result.all())
    if member_ids:
        await session.execute(
            delete(AssetGroupMember).where(col(AssetGroupMember.id).in_(member_ids))
        )
    return len(member_ids)


# ── Group CRUD ───────────────────────────────────────────────────────


async def create_group(
    organization_id: UUID,
    name: str,
    *,
    group_type: GroupType | str = GroupType.CUSTOM,
    description: str | None = None,
    parent_group_id: UUID | None = None,
    is_dynamic: bool = False,
    rules: GroupRules | Mapping[str, Any] | None = None,
    icon: str | None = None,
    color: str | None = None,
    sort_order: int = 0,
) -> AssetGroup:
    """Create an asset group.

    ``group_type`` classifies the group and ``is_dynamic`` decides how its
    membership is kept, so a ``location`` group can be rule-driven too.
    A group of type ``dynamic`` is always rule-driven. Rule-driven groups
    need ``rules`` with at least one predicate; static groups must not
    carry rules. Membership of a new dynamic group is empty until
    ``recompute_dynamic_group`` runs.

    Parameters
    ----------
    organization_id : UUID
        Owning tenant.
    name : str
        Unique within the tenant, at most 100 characters.
    parent_group_id : UUID | None
        Optional parent in the same tenant.

    Returns
    -------
    AssetGroup
        The created group.
    """
    name = validate_name(name, max_length=MAX_GROUP_NAME_LENGTH)
    parsed_type = parse_group_type(group_type)
    is_dynamic = is_dynamic or parsed_type == GroupType.DYNAMIC
    if is_dynamic:
        stored_rules: dict[str, Any] | None = parse_rules(rules)
    elif rules is not None:
        msg = "Only dynamic groups can have rules"
        raise ValidationError(msg)
    else:
        stored_rules = None
    if color is not None:
        color = validate_color(color)

    async with get_session() as session:
        await require_organization(session, organization_id)
        await _ensure_name_free(session, organization_id, name)
        if parent_group_id is not None:
            await _validate_parent(session, None, parent_group_id, organization_id)

        group = AssetGroup(
            organization_id=organization_id,
            name=name,
            description=description,
            type=parsed_type,
            parent_group_id=parent_group_id,
            is_dynamic=is_dynamic,
            rules=stored_rules,
            icon=icon,
            color=color,
            sort_order=sort_order,
        )
        session.add(group)
        await session.flush()
        await session.refresh(group)

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    logger.info(
        "Created asset group %s (%s) for org=%s", group.id, name, organization_id
    )
    return group


async def get_group(group_id: UUID, organization_id: UUID) -> AssetGroup:
    """Get an asset group by id within an organization."""
    async with get_session() as session:
        return await load_group(session, group_id, organization_id)


async def list_groups(
    organization_id: UUID, group_type: GroupType | str | None = None
) -> list[AssetGroup]:
    """List an organization's groups ordered by sort order, then name."""
    stmt = select(AssetGroup).where(AssetGroup.organization_id == organization_id)
    if group_type is not None:
        stmt = stmt.where(AssetGroup.type == parse_group_type(group_type))
    async with get_session() as session:
        result = await session.exec(
            stmt.order_by(col(AssetGroup.sort_order), col(AssetGroup.name))
        )
        return list(result.all())


async def update_group(
    group_id: UUID,
    organization_id: UUID,
    *,
    name: str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel distinguishes "not provided" from explicit None
    description: str | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    group_type: GroupType | str = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    parent_group_id: UUID | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    is_dynamic: bool = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    rules: GroupRules | Mapping[str, Any] | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    icon: str | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    color: str | None = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
    sort_order: int = ...,  # type: ignore[assignment]  -- Ellipsis sentinel
) -> AssetGroup:
    """Patch group details.

    Omit a parameter to leave the field unchanged. Pass
    ``parent_group_id=None`` to make the group a root. A new parent is
    rejected with ``ValidationError`` when it would make the group its own
    ancestor or nest the hierarchy too deeply.

    Rules can only be set on dynamic groups and take effect at the next
    recompute. Turning ``is_dynamic`` on requires rules, either passed
    here or already stored. Turning it off drops the rules together with
    the rule-derived memberships.
    """
    async with get_session() as session:
        group = await load_group(session, group_id, organization_id)

        if name is not ...:
            new_name = validate_name(name, max_length=MAX_GROUP_NAME_LENGTH)
            if new_name != group.name:
                await _ensure_name_free(session, organization_id, new_name)
            group.name = new_name
        if description is not ...:
            group.description = description
        if parent_group_id is not ...:
            if parent_group_id is not None:
                await _validate_parent(
                    session, group, parent_group_id, organization_id
                )
            group.parent_group_id = parent_group_id
        if group_type is not ...:
            group.type = parse_group_type(group_type)

        dynamic = group.is_dynamic if is_dynamic is ... else is_dynamic
        dynamic = dynamic or group.type == GroupType.DYNAMIC
        if dynamic:
            if rules is not ... or not group.is_dynamic:
                group.rules = parse_rules(group.rules if rules is ... else rules)
        elif rules is not ... and rules is not None:
            msg = "Only dynamic groups can have rules"
            raise ValidationError(msg)
        elif group.is_dynamic:
            cleared = await _clear_members(session, group.id)
            group.rules = None
            group.member_count = 0
            logger.info(
                "Group %s is now static; dropped %d rule-derived member(s)",
                group.id,
                cleared,
            )
        group.is_dynamic = dynamic

        if icon is not ...:
            group.icon = icon
        if color is not ...:
            group.color = validate_color(color) if color is not None else None
        if sort_order is not ...:
            group.sort_order = sort_order

        group.updated_at = _utcnow()
        session.add(group)
        await session.flush()
        await session.refresh(group)

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    return group


async def delete_group(group_id: UUID, organization_id: UUID) -> AssetGroup:
    """Delete a group.

    Child groups become roots and memberships are removed; the assets
    themselves are untouched. Returns the deleted group.
    """
    async with get_session() as session:
        group = await load_group(session, group_id, organization_id)

        await session.execute(
            update(AssetGroup)
            .where(col(AssetGroup.parent_group_id) == group.id)
            .values(parent_group_id=None, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        cleared = await _clear_members(session, group.id)
        await session.delete(group)
        await session.flush()

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    logger.info(
        "Deleted asset group %s (%s) with %d membership(s) for org=%s",
        group.id,
        group.name,
        cleared,
        organization_id,
    )
    return group


# ── Tree queries ─────────────────────────────────────────────────────


async def get_tree(organization_id: UUID) -> list[GroupNode]:
    """Return the organization's group forest.

    Roots come first in ``(sort_order, name)`` order and each node's
    children are sorted the same way. Groups whose parent is missing are
    treated as roots.
    """
    groups = await list_groups(organization_id)
    by_id = {group.id: group for group in groups}
    children: dict[UUID | None, list[AssetGroup]] = {}
    for group in groups:
        parent = group.parent_group_id if group.parent_group_id in by_id else None
        children.setdefault(parent, []).append(group)

    placed: set[UUID] = set()

    def build(group: AssetGroup) -> GroupNode:
        placed.add(group.id)
        node = GroupNode(group)
        for child in children.get(group.id, []):
            if child.id not in placed:
                node.children.append(build(child))
        return node

    forest = [build(root) for root in children.get(None, [])]
    if len(placed) != len(groups):
        logger.warning(
            "%d asset group(s) unreachable from a root (org=%s)",
            len(groups) - len(placed),
            organization_id,
        )
    return forest


async def get_path(group_id: UUID, organization_id: UUID) -> list[AssetGroup]:
    """Return the breadcrumb from the root down to *group_id* (inclusive).

    Walks ``parent_group_id`` all the way to a root, whatever the
    configured depth cap, and terminates even if the stored hierarchy
    were to contain a cycle.
    """
    async with get_session() as session:
        group = await load_group(session, group_id, organization_id)
        chain = await _ancestors(session, group)
    return [*reversed(chain), group]


# ── Membership ───────────────────────────────────────────────────────


async def add_members(
    group_id: UUID,
    asset_ids: Iterable[UUID],
    organization_id: UUID,
    *,
    added_by: UUID,
    notes: str | None = None,
    expires_at: datetime | None = None,
) -> list[UUID]:
    """Add assets to a static group. Returns the ids newly added."""
    async with get_session() as session:
        group = await _require_static_group(session, group_id, organization_id)
        ids = await _require_assets(session, asset_ids, organization_id)
        added = await _insert_members(
            session, group.id, ids, added_by, notes=notes, expires_at=expires_at
        )

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    logger.debug("Added %d asset(s) to group %s", len(added), group_id)
    return added


async def remove_members(
    group_id: UUID, asset_ids: Iterable[UUID], organization_id: UUID
) -> list[UUID]:
    """Remove assets from a static group. Returns the ids actually removed."""
    async with get_session() as session:
        group = await _require_static_group(session, group_id, organization_id)
        removed = await _delete_members(
            session, group.id, list(dict.fromkeys(asset_ids))
        )

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    logger.debug("Removed %d asset(s) from group %s", len(removed), group_id)
    return removed


async def move_members(
    to_group_id: UUID,
    asset_ids: Iterable[UUID],
    organization_id: UUID,
    *,
    from_group_id: UUID | None = None,
    added_by: UUID,
) -> MoveResult:
    """Move assets into *to_group_id*, removing them from *from_group_id*.

    Both halves run in one transaction and both counters move by the
    rows actually changed.
    """
    if from_group_id == to_group_id:
        msg = "Source and destination group are the same"
        raise ValidationError(msg)

    async with get_session() as session:
        destination = await _require_static_group(
            session, to_group_id, organization_id
        )
        ids = await _require_assets(session, asset_ids, organization_id)
        removed: list[UUID] = []
        if from_group_id is not None:
            source = await _require_static_group(
                session, from_group_id, organization_id
            )
            removed = await _delete_members(session, source.id, ids)
        added = await _insert_members(session, destination.id, ids, added_by)

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    return MoveResult(removed=len(removed), added=len(added))


async def list_members(
    group_id: UUID, organization_id: UUID
) -> list[AssetGroupMember]:
    """List a group's memberships in the order they were added."""
    async with get_session() as session:
        await load_group(session, group_id, organization_id)
        result = await session.exec(
            select(AssetGroupMember)
            .where(AssetGroupMember.group_id == group_id)
            .order_by(col(AssetGroupMember.added_at), col(AssetGroupMember.asset_id))
        )
        return list(result.all())


# ── Dynamic groups ───────────────────────────────────────────────────


async def _matching_asset_ids(
    session: AsyncSession, organization_id: UUID, rules: GroupRules
) -> list[UUID]:
    stmt = select(Asset.id).where(
        Asset.organization_id == organization_id,
        col(Asset.deleted_at).is_(None),
    )
    for column, value in rules.predicates().items():
        stmt = stmt.where(getattr(Asset, column) == value)
    result = await session.exec(stmt.order_by(col(Asset.id)))
    return list(result.all())


async def _recompute(session: AsyncSession, group: AssetGroup) -> int:
    if not group.is_dynamic:
        msg = f"Asset group {group.name!r} is not dynamic"
        raise ValidationError(msg)
    try:
        rules = GroupRules.model_validate(group.rules or {})
    except PydanticValidationError as exc:
        msg = f"Stored rules of group {group.name!r} are malformed"
        raise ValidationError(msg) from exc
    if not rules.predicates():
        msg = f"Dynamic group {group.name!r} has no rule predicates"
        raise ValidationError(msg)

    matching = await _matching_asset_ids(session, group.organization_id, rules)

    await session.execute(
        delete(AssetGroupMember).where(col(AssetGroupMember.group_id) == group.id)
    )
    for asset_id in matching:
        session.add(
            AssetGroupMember(
                group_id=group.id,
                asset_id=asset_id,
                added_by=group.organization_id,
            )
        )
    await session.flush()
    await session.execute(
        update(AssetGroup)
        .where(col(AssetGroup.id) == group.id)
        .values(member_count=len(matching), updated_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    logger.info("Recomputed dynamic group %s: %d member(s)", group.id, len(matching))
    return len(matching)


async def recompute_dynamic_group(group_id: UUID, organization_id: UUID) -> int:
    """Replace a dynamic group's membership with the assets its rules match.

    Only live (not soft-deleted) assets of the tenant are considered. The
    operation is a full replace, so repeating it without asset changes
    yields the same membership set and count.

    Returns the resulting member count.
    """
    async with get_session() as session:
        group = await load_group(session, group_id, organization_id)
        count = await _recompute(session, group)

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    return count


async def recompute_all_dynamic_groups(organization_id: UUID) -> dict[UUID, int]:
    """Recompute every dynamic group of a tenant in one transaction."""
    async with get_session() as session:
        result = await session.exec(
            select(AssetGroup).where(
                AssetGroup.organization_id == organization_id,
                col(AssetGroup.is_dynamic).is_(True),
            )
        )
        counts = {group.id: await _recompute(session, group) for group in result.all()}

    get_cache_gateway().invalidate_tenant_groups(organization_id)
    return counts
