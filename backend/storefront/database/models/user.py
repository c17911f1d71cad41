"""
User model referenced by carts and orders.

Accounts and credentials are owned by the authentication service. This
table only holds what order handling needs: contact address, display name,
role for admin endpoints and the active flag.
"""

import enum
from typing import Optional

from sqlalchemy import Boolean, Enum as SQLEnum, String
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import BaseModel


class UserRole(str, enum.Enum):
    """User role enumeration for role-based access control."""

    CUSTOMER = "customer"
    ADMIN = "admin"

    @classmethod
    def from_string(cls, value: str) -> "UserRole":
        """
        Convert string to UserRole enum.

        Raises:
            ValueError: If value is not a valid role
        """
        try:
            return cls[value.upper()]
        except KeyError:
            raise ValueError(f"Invalid role: {value}")


class User(BaseModel):
    """Storefront customer or administrator."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Contact and login email address",
    )

    name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Display name",
    )

    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, name="user_role", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=UserRole.CUSTOMER,
        comment="Access role",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Inactive accounts cannot authenticate",
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
