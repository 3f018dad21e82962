"""User model."""
import enum

from sqlalchemy import Boolean, Column, Enum as SQLEnum, ForeignKey, String, Uuid

from tiktok_accounts.database import Base
from tiktok_accounts.models.base import BaseModel


class Role(str, enum.Enum):
    """Closed set of caller roles."""
    SUPER_ADMIN = "super_admin"
    MANAGER = "manager"
    OPERATOR = "operator"


class User(Base, BaseModel):
    """
    User model representing platform staff.
    
    References to groups and other users are stored as identifiers only
    and resolved through the entity store.
    
    Attributes:
        username: Unique login name
        hashed_password: Password hash produced by the auth layer
        role: SuperAdmin, Manager or Operator
        group_id: Group membership (Operators only)
        created_by: User who created this record
        managed_by: Manager who administratively owns this user (Operators only)
        is_active: Whether the user may act in the system
    
    Invariants (see utils.invariants.check_user_hierarchy):
        - a Manager's managed_by is empty
        - an Operator has both managed_by and group_id
        - a user never references itself as creator or manager
    """
    
    __tablename__ = "users"
    
    username = Column(String(50), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(
        SQLEnum(Role, name="user_role", values_callable=lambda roles: [r.value for r in roles]),
        nullable=False,
        default=Role.OPERATOR,
        index=True
    )
    group_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("groups.id"),
        nullable=True,
        index=True
    )
    created_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    managed_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    
    def __repr__(self):
        return f"<User(username='{self.username}', role='{self.role}')>"
