"""User entity model.

Users are issued and authenticated by the external auth layer; this table
only anchors ownership. All workflows and credentials are scoped by user_id.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

from pydantic import EmailStr
from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from chainly.models.credential import Credential
    from chainly.models.workflow import Workflow


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """User database entity."""

    __tablename__ = "user"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique user identifier (UUID)",
    )
    username: str = Field(
        max_length=50,
        index=True,
        unique=True,
        description="Unique username",
    )
    email: EmailStr | None = Field(
        default=None,
        max_length=255,
        description="User email address (optional)",
    )
    is_active: bool = Field(
        default=True,
        description="Whether the user account is active",
    )
    created_at: datetime = Field(
        sa_type=DateTime(timezone=True),
        default_factory=utc_now,
        description="Account creation timestamp (UTC)",
    )

    # Relationships
    credentials: list["Credential"] = Relationship(back_populates="user")
    workflows: list["Workflow"] = Relationship(back_populates="user")


class TokenPayload(SQLModel):
    """JWT token payload schema."""

    sub: str  # user_id
    exp: datetime
