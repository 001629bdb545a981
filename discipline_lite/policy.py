"""
Access Policy for Disciplinary Cases
====================================

Roles (ranked):
- unauthenticated: anonymous caller, public cases only
- member: signed-in organisation member, public cases only
- admin: privileged, all reads and every mutation except visibility changes
- super_admin: privileged, everything including visibility changes

Every decision goes through ACTION_MIN_ROLE; nothing else compares role strings.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from .db.models import CaseVisibility
from .errors import CaseForbiddenError

logger = logging.getLogger(__name__)


class ActorRole(str, enum.Enum):
    """Closed set of caller roles"""
    UNAUTHENTICATED = "unauthenticated"
    MEMBER = "member"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ActorRole":
        """Map an identity-provider role claim onto the enum (unknown -> member)."""
        if not value:
            return cls.UNAUTHENTICATED
        normalized = value.strip().lower().replace("-", "_")
        if normalized in ("user", "member"):
            return cls.MEMBER
        try:
            return cls(normalized)
        except ValueError:
            logger.warning(f"Unknown role claim {value!r}, treating as member")
            return cls.MEMBER


ROLE_RANK = {
    ActorRole.UNAUTHENTICATED: 0,
    ActorRole.MEMBER: 1,
    ActorRole.ADMIN: 2,
    ActorRole.SUPER_ADMIN: 3,
}


class CaseAction(str, enum.Enum):
    LIST = "case:list"
    READ = "case:read"
    CREATE = "case:create"
    UPDATE = "case:update"
    TRANSITION_STATUS = "case:transition_status"
    RECORD_DECISION = "case:record_decision"
    CHANGE_VISIBILITY = "case:change_visibility"
    APPEND_NOTE = "case:append_note"
    APPEND_IMAGES = "case:append_images"
    VIEW_INTERNAL = "case:view_internal"


ACTION_MIN_ROLE = {
    CaseAction.LIST: ActorRole.UNAUTHENTICATED,
    CaseAction.READ: ActorRole.UNAUTHENTICATED,
    CaseAction.CREATE: ActorRole.ADMIN,
    CaseAction.UPDATE: ActorRole.ADMIN,
    CaseAction.TRANSITION_STATUS: ActorRole.ADMIN,
    CaseAction.RECORD_DECISION: ActorRole.ADMIN,
    CaseAction.CHANGE_VISIBILITY: ActorRole.SUPER_ADMIN,
    CaseAction.APPEND_NOTE: ActorRole.ADMIN,
    CaseAction.APPEND_IMAGES: ActorRole.ADMIN,
    CaseAction.VIEW_INTERNAL: ActorRole.ADMIN,
}

DENIAL_MESSAGES = {
    CaseAction.CREATE: "Only administrators can initiate disciplinary cases",
    CaseAction.UPDATE: "Only administrators can edit disciplinary cases",
    CaseAction.TRANSITION_STATUS: "Only administrators can update case status",
    CaseAction.RECORD_DECISION: "Only administrators can record decisions",
    CaseAction.CHANGE_VISIBILITY: "Only Super Admins can change case visibility",
    CaseAction.APPEND_NOTE: "Only administrators can add internal notes",
    CaseAction.APPEND_IMAGES: "Only administrators can add case images",
    CaseAction.VIEW_INTERNAL: "Only administrators can view internal case records",
}

# Visibility tiers readable without privilege
PUBLIC_TIERS = frozenset({CaseVisibility.PUBLIC})


@dataclass(frozen=True)
class Actor:
    """The calling principal, supplied explicitly to every operation"""
    id: Optional[str]
    role: ActorRole

    @property
    def is_privileged(self) -> bool:
        return is_privileged(self.role)

    @property
    def is_super_admin(self) -> bool:
        return self.role == ActorRole.SUPER_ADMIN

    @classmethod
    def anonymous(cls) -> "Actor":
        return cls(id=None, role=ActorRole.UNAUTHENTICATED)


def is_privileged(role: ActorRole) -> bool:
    return ROLE_RANK[role] >= ROLE_RANK[ActorRole.ADMIN]


def is_allowed(role: ActorRole, action: CaseAction, visibility: Optional[CaseVisibility] = None) -> bool:
    """
    Decide whether ``role`` may perform ``action``.

    For READ, ``visibility`` is the case's tier: non-privileged roles may only
    read public cases.
    """
    if ROLE_RANK[role] < ROLE_RANK[ACTION_MIN_ROLE[action]]:
        return False
    if action == CaseAction.READ and visibility is not None and not is_privileged(role):
        return visibility in PUBLIC_TIERS
    return True


def require(role: ActorRole, action: CaseAction, visibility: Optional[CaseVisibility] = None) -> None:
    """Raise CaseForbiddenError unless the action is allowed."""
    if not is_allowed(role, action, visibility):
        message = DENIAL_MESSAGES.get(action, "You do not have permission to view this case")
        logger.info(f"Denied {action.value} for role={role.value} visibility={getattr(visibility, 'value', None)}")
        raise CaseForbiddenError(message)


def visibility_filter(role: ActorRole, requested: Optional[CaseVisibility]) -> Optional[CaseVisibility]:
    """
    Visibility to query for a listing.

    Non-privileged callers always get PUBLIC, whatever they asked for.
    """
    if not is_privileged(role):
        return CaseVisibility.PUBLIC
    return requested


def can_view_internal_notes(role: ActorRole) -> bool:
    return is_allowed(role, CaseAction.VIEW_INTERNAL)
