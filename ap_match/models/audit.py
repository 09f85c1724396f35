"""
Audit trail model.
"""

from sqlalchemy import JSON, Column, Index, String

from ap_match.db.base import TimestampMixin, UUIDMixin
from ap_match.db.session import Base


class AuditLog(Base, UUIDMixin, TimestampMixin):
    """Append-only audit record of match core writes."""

    __tablename__ = "audit_logs"

    company_id = Column(String(64), nullable=False, index=True)
    entity = Column(String(100), nullable=False)
    entity_id = Column(String(255), nullable=False)
    action = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    user_id = Column(String(255), nullable=True)

    __table_args__ = (
        Index('idx_audit_entity', 'entity', 'entity_id'),
    )

    def __repr__(self):
        return f"<AuditLog(entity={self.entity}, entity_id={self.entity_id}, action={self.action})>"
