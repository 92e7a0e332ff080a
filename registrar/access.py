"""
Access policy.

Guards raise on failure and return nothing useful on success. Role gating is
exact-set membership; ROLE_RANK exists for display and comparison only.
"""
import logging
from typing import Iterable, Optional

from .errors import Unauthorized, Forbidden
from .models import UserRole, TournamentStatus

logger = logging.getLogger(__name__)

ROLE_RANK = {
    UserRole.USER.value: 1,
    UserRole.ADMIN.value: 2,
    UserRole.SUPER_ADMIN.value: 3,
}

ADMIN_ROLES = (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)

PUBLIC_TOURNAMENT_STATUSES = (TournamentStatus.OPEN.value, TournamentStatus.IN_PROGRESS.value)


def _role(principal) -> Optional[str]:
    role = getattr(principal, 'role', None)
    return getattr(role, 'value', role)


def require_auth(principal):
    if principal is None:
        raise Unauthorized("Authentication required")
    return principal


def require_role(principal, allowed_roles: Iterable) -> None:
    require_auth(principal)
    allowed = {getattr(r, 'value', r) for r in allowed_roles}
    if _role(principal) not in allowed:
        logger.warning(
            f"Access denied: user {principal.id} with role {_role(principal)} "
            f"needs one of {sorted(allowed)}"
        )
        raise Forbidden(f"This action requires one of: {', '.join(sorted(allowed))}")


def require_admin(principal) -> None:
    require_role(principal, ADMIN_ROLES)


def require_super_admin(principal) -> None:
    require_role(principal, (UserRole.SUPER_ADMIN.value,))


def is_admin(principal) -> bool:
    return principal is not None and _role(principal) in ADMIN_ROLES


def has_role_at_least(principal, role) -> bool:
    """Hierarchy comparison; never used to gate an action."""
    if principal is None:
        return False
    return ROLE_RANK.get(_role(principal), 0) >= ROLE_RANK.get(getattr(role, 'value', role), 0)


def visible_tournament_statuses(principal) -> Optional[tuple]:
    """Statuses a principal may list; None means unrestricted."""
    if is_admin(principal):
        return None
    return PUBLIC_TOURNAMENT_STATUSES


def can_view_tournament(principal, tournament) -> bool:
    if tournament is None or tournament.deleted_at is not None:
        return False
    statuses = visible_tournament_statuses(principal)
    return statuses is None or tournament.status in statuses
