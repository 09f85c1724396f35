"""
Audit sink for match core writes.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ap_match.models.audit import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Append audit records inside the caller's unit of work."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def record(
        self,
        company_id: str,
        entity: str,
        entity_id: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> AuditLog:
        """
        Append one audit record.

        The record is flushed but not committed; it lands or rolls back
        together with the write it describes.

        Args:
            company_id: Owning company
            entity: Entity name, e.g. ``match_result``
            entity_id: Entity identifier
            action: Action name, e.g. ``RUN_LINE_MATCH``
            payload: JSON-serializable details
            user_id: Acting user, if any

        Returns:
            The pending audit row
        """
        entry = AuditLog(
            company_id=company_id,
            entity=entity,
            entity_id=str(entity_id),
            action=action,
            payload=payload or {},
            user_id=user_id,
        )
        self.db.add(entry)
        await self.db.flush()

        self.logger.info(f"Audit: {action} on {entity} {entity_id} (company={company_id}, user={user_id})")
        return entry
