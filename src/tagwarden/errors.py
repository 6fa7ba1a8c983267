"""Typed errors raised by the governance engine.

Callers translate these into form-field errors or notifications. Raw
SQLAlchemy exceptions never escape the engine; ``get_session()`` converts
them into ``Conflict`` or ``StoreError``.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for all engine errors."""


class NotFound(GovernanceError, LookupError):
    """A tag, group, entity or tenant row is absent (or outside the tenant)."""


class Conflict(GovernanceError):
    """A uniqueness rule was violated (tag/group name, association)."""


class Forbidden(GovernanceError, PermissionError):
    """Mutation of a system-protected row, or cross-tenant access."""


class ValidationError(GovernanceError, ValueError):
    """Malformed input: bad rules, self-reference, missing required field."""


class StoreError(GovernanceError):
    """The relational store failed (connection loss, deadlock, timeout).

    The engine never retries; callers may retry the whole operation.
    """
