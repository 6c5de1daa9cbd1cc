"""Access policy: one matrix deciding who may do what to each resource.

Every catalog, settings and result operation passes through ``authorize()``,
either directly (row-level owner checks) or via the ``requires`` decorator.
Nothing is cached; the identity is checked on each call.
"""
from __future__ import annotations

import functools
import uuid
from dataclasses import dataclass
from enum import Enum

from diagnostic.errors import NotAuthenticatedError, NotFoundOrForbidden, PermissionDeniedError

ROLE_ANONYMOUS = "anonymous"
ROLE_AUTHENTICATED = "authenticated"
ROLE_ADMIN = "admin"


class Resource(str, Enum):
    PILLAR = "pillar"
    QUESTION = "question"
    RESULT = "diagnostic_result"
    SETTINGS = "settings"
    BRANDING = "branding"


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Rule(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"
    OWNER = "owner"
    ADMIN = "admin"


POLICY: dict[tuple[Resource, Action], Rule] = {
    (Resource.PILLAR, Action.READ): Rule.AUTHENTICATED,
    (Resource.PILLAR, Action.CREATE): Rule.AUTHENTICATED,
    (Resource.PILLAR, Action.UPDATE): Rule.AUTHENTICATED,
    (Resource.PILLAR, Action.DELETE): Rule.ADMIN,
    (Resource.QUESTION, Action.READ): Rule.AUTHENTICATED,
    (Resource.QUESTION, Action.CREATE): Rule.AUTHENTICATED,
    (Resource.QUESTION, Action.UPDATE): Rule.AUTHENTICATED,
    (Resource.QUESTION, Action.DELETE): Rule.ADMIN,
    (Resource.RESULT, Action.READ): Rule.OWNER,
    (Resource.RESULT, Action.CREATE): Rule.OWNER,
    (Resource.RESULT, Action.DELETE): Rule.OWNER,
    (Resource.SETTINGS, Action.READ): Rule.AUTHENTICATED,
    (Resource.SETTINGS, Action.UPDATE): Rule.AUTHENTICATED,
    (Resource.BRANDING, Action.READ): Rule.PUBLIC,
}


@dataclass(frozen=True)
class Identity:
    user_id: str | None = None
    role: str = ROLE_ANONYMOUS

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and self.role != ROLE_ANONYMOUS


ANONYMOUS = Identity()


def parse_uuid(value: str | None) -> str | None:
    """Return the canonical UUID string, or None if *value* is not one."""
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value).strip()))
    except ValueError:
        return None


def resolve_identity(user_id: str | None, admin_user_ids: set[str] | frozenset[str] = frozenset()) -> Identity:
    """Build the caller identity from a raw user id supplied by the identity provider."""
    canonical = parse_uuid(user_id)
    if canonical is None:
        return ANONYMOUS
    role = ROLE_ADMIN if canonical in admin_user_ids else ROLE_AUTHENTICATED
    return Identity(user_id=canonical, role=role)


def authorize(identity: Identity, resource: Resource, action: Action, owner_id: str | None = None) -> None:
    """Raise unless *identity* may perform *action* on *resource*.

    For owner rules, pass the row's owner as *owner_id*; without it only
    authentication is checked, so callers can fail fast before loading rows.
    """
    rule = POLICY.get((resource, action))
    if rule is None:
        raise PermissionDeniedError(f"{action.value} is not permitted on {resource.value}")
    if rule is Rule.PUBLIC:
        return
    if not identity.is_authenticated:
        raise NotAuthenticatedError("Authentication required")
    if rule is Rule.ADMIN and identity.role != ROLE_ADMIN:
        raise PermissionDeniedError(f"{action.value} on {resource.value} requires an administrator")
    if rule is Rule.OWNER and owner_id is not None and owner_id != identity.user_id:
        if action is Action.CREATE:
            raise PermissionDeniedError(f"{resource.value} can only be created for the caller")
        raise NotFoundOrForbidden()


def requires(resource: Resource, action: Action):
    """Decorate a store function taking ``(session, identity, ...)``."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(session, identity: Identity, *args, **kwargs):
            authorize(identity, resource, action)
            return fn(session, identity, *args, **kwargs)
        wrapper.policy = (resource, action)
        return wrapper
    return decorator
