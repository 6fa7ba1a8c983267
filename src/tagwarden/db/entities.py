"""Polymorphic entity references.

Callers name a taggable entity with an ``EntityRef`` (kind + id). Inside
the engine each kind resolves to its concrete table so tenancy can be
checked with a typed lookup instead of string dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlmodel import SQLModel, col, select

from tagwarden.db.models import (
    Asset,
    CommunicationTemplate,
    EntityKind,
    Exercise,
    Incident,
    Runbook,
)
from tagwarden.errors import Forbidden, NotFound, ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

_ENTITY_MODELS: dict[EntityKind, type[SQLModel]] = {
    EntityKind.ASSET: Asset,
    EntityKind.INCIDENT: Incident,
    EntityKind.RUNBOOK: Runbook,
    EntityKind.COMMUNICATION: CommunicationTemplate,
    EntityKind.EXERCISE: Exercise,
}


@dataclass(frozen=True)
class EntityRef:
    """One taggable entity instance."""

    kind: EntityKind
    id: UUID

    @classmethod
    def of(cls, kind: EntityKind | str, entity_id: UUID) -> EntityRef:
        return cls(kind=parse_entity_kind(kind), id=entity_id)


def parse_entity_kind(kind: EntityKind | str) -> EntityKind:
    """Coerce a kind string, raising ValidationError for unknown kinds."""
    try:
        return EntityKind(kind)
    except ValueError:
        msg = f"Unknown entity kind {kind!r}"
        raise ValidationError(msg) from None


def model_for(kind: EntityKind) -> type[SQLModel]:
    """Return the table backing an entity kind."""
    return _ENTITY_MODELS[kind]


async def require_entities(
    session: AsyncSession,
    refs: Iterable[EntityRef],
    organization_id: UUID,
) -> None:
    """Check every referenced entity exists and belongs to the tenant.

    Raises:
        NotFound: An entity does not exist.
        Forbidden: An entity belongs to another tenant.
    """
    by_kind: dict[EntityKind, set[UUID]] = {}
    for ref in refs:
        by_kind.setdefault(ref.kind, set()).add(ref.id)

    for kind, ids in by_kind.items():
        model = model_for(kind)
        result = await session.exec(
            select(model.id, model.organization_id).where(  # type: ignore[attr-defined]
                col(model.id).in_(ids)  # type: ignore[attr-defined]
            )
        )
        owners = dict(result.all())
        missing = ids - owners.keys()
        if missing:
            msg = f"{kind} {sorted(missing, key=str)[0]} not found"
            raise NotFound(msg)
        foreign = [eid for eid, org in owners.items() if org != organization_id]
        if foreign:
            msg = f"{kind} {foreign[0]} belongs to another organization"
            raise Forbidden(msg)
