"""
Company-scoped role membership used to pick exception owners.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from ap_match.db.base import TimestampMixin, UUIDMixin, utcnow
from ap_match.db.session import Base


class Role(Base, UUIDMixin, TimestampMixin):
    """Role definitions."""

    __tablename__ = "roles"

    # Role details
    name = Column(String(100), unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Role hierarchy
    level = Column(Integer, nullable=False, default=0)  # Higher number = higher privilege
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index('idx_role_name_active', 'name', 'is_active'),
    )

    user_assignments = relationship("UserRole", back_populates="role")

    def __repr__(self):
        return f"<Role(id={self.id}, name='{self.name}', level={self.level})>"


class UserRole(Base, UUIDMixin, TimestampMixin):
    """User role assignment within a company, with optional expiration."""

    __tablename__ = "user_roles"

    # Assignment details
    user_id = Column(String(255), nullable=False, index=True)
    role_id = Column(Uuid(as_uuid=True), ForeignKey("roles.id"), nullable=False)
    company_id = Column(String(64), nullable=False, index=True)

    # Assignment configuration
    is_active = Column(Boolean, default=True, nullable=False)
    assigned_by = Column(String(255), nullable=True)
    assigned_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_user_role_company_user', 'company_id', 'user_id', 'is_active'),
        Index('idx_user_role_company_role', 'company_id', 'role_id', 'is_active'),
        UniqueConstraint('user_id', 'role_id', 'company_id', name='uq_user_role_company'),
    )

    role = relationship("Role", back_populates="user_assignments")

    def __repr__(self):
        return f"<UserRole(user={self.user_id}, role={self.role_id}, company={self.company_id})>"
