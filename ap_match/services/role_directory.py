"""
Role directory and owner selection policies.

The directory answers which active users hold a role in a company; the
selection policy picks one of them deterministically.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ap_match.core.config import settings
from ap_match.core.exceptions import ConfigurationException
from ap_match.db.base import utcnow
from ap_match.models.rbac import Role, UserRole

logger = logging.getLogger(__name__)


class RoleDirectory:
    """Company-scoped role membership lookups."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _active_assignment(self, company_id: str, now: datetime):
        return (
            UserRole.company_id == company_id,
            UserRole.is_active.is_(True),
            Role.is_active.is_(True),
            or_(UserRole.expires_at.is_(None), UserRole.expires_at > now),
        )

    async def active_users_with_role(
        self,
        company_id: str,
        role_name: str,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Return the sorted ids of active users holding ``role_name`` in the company."""
        now = now or utcnow()
        result = await self.db.execute(
            select(UserRole.user_id)
            .join(Role, UserRole.role_id == Role.id)
            .where(Role.name == role_name, *self._active_assignment(company_id, now))
            .distinct()
            .order_by(UserRole.user_id)
        )
        return list(result.scalars().all())

    async def roles_for_user(
        self,
        company_id: str,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Return the names of the active roles a user holds in the company."""
        now = now or utcnow()
        result = await self.db.execute(
            select(Role.name)
            .join(UserRole, UserRole.role_id == Role.id)
            .where(UserRole.user_id == user_id, *self._active_assignment(company_id, now))
            .distinct()
            .order_by(Role.name)
        )
        return list(result.scalars().all())


class OwnerSelectionPolicy(ABC):
    """Picks one owner among candidate role holders."""

    name = "base"

    @abstractmethod
    def select(self, company_id: str, role_name: str, candidates: Sequence[str]) -> Optional[str]:
        """Return the chosen user id, or None when there are no candidates."""
        pass


class FirstCandidatePolicy(OwnerSelectionPolicy):
    """Always the first candidate in directory order."""

    name = "first"

    def select(self, company_id: str, role_name: str, candidates: Sequence[str]) -> Optional[str]:
        if not candidates:
            return None
        return candidates[0]


class RoundRobinPolicy(OwnerSelectionPolicy):
    """Rotate through candidates per (company, role) within the process."""

    name = "round_robin"

    def __init__(self):
        self._cursors: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def select(self, company_id: str, role_name: str, candidates: Sequence[str]) -> Optional[str]:
        if not candidates:
            return None

        key = (company_id, role_name)
        with self._lock:
            cursor = self._cursors.get(key, 0)
            self._cursors[key] = cursor + 1

        return candidates[cursor % len(candidates)]

    def reset(self):
        with self._lock:
            self._cursors.clear()


_POLICIES = {
    FirstCandidatePolicy.name: FirstCandidatePolicy,
    RoundRobinPolicy.name: RoundRobinPolicy,
}

_default_policy: Optional[OwnerSelectionPolicy] = None


def get_selection_policy(name: Optional[str] = None) -> OwnerSelectionPolicy:
    """
    Return an owner selection policy.

    Without a name, the process-wide policy configured by
    ``OWNER_SELECTION_POLICY`` is returned so round-robin cursors are shared.
    """
    global _default_policy

    if name is None:
        if _default_policy is None:
            _default_policy = get_selection_policy(settings.OWNER_SELECTION_POLICY)
        return _default_policy

    policy_class = _POLICIES.get(name)
    if policy_class is None:
        raise ConfigurationException(
            f"Unknown owner selection policy: {name}",
            details={"available": sorted(_POLICIES)},
        )
    return policy_class()
