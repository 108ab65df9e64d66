"""Credential entity model.

Defines the Credential table for storing encrypted user credentials.
The access value and optional refresh token are AES-256-GCM envelopes.
Credentials are scoped per-user for multi-tenancy security.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import Column, Field, Relationship, SQLModel, Text

if TYPE_CHECKING:
    from chainly.models.user import User


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class CredentialType(str, Enum):
    """Supported credential providers."""

    OPENAI = "OPENAI"
    ANTHROPIC = "ANTHROPIC"
    GEMINI = "GEMINI"
    GOOGLE_CALENDAR = "GOOGLE_CALENDAR"
    GMAIL = "GMAIL"


class CredentialBase(SQLModel):
    """Base credential fields shared across models."""

    name: str = Field(
        max_length=255,
        min_length=1,
        description="Human-readable credential name",
    )
    type: CredentialType = Field(description="Credential provider")


class Credential(CredentialBase, table=True):
    """Credential database entity.

    SECURITY NOTES:
    - Never log decrypted credential values
    - Decrypt only at point of use, never cache the plaintext
    """

    __tablename__ = "credential"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        description="Unique credential identifier (UUID)",
    )
    user_id: str = Field(
        foreign_key="user.id",
        index=True,
        description="Owner user ID",
    )
    value: str = Field(
        sa_column=Column(Text, nullable=False),
        description="Encrypted access value (API key or access token)",
    )
    refresh_token: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Encrypted OAuth refresh token",
    )
    expires_at: datetime | None = Field(
        sa_type=DateTime(timezone=True),
        default=None,
        description="Access token expiry (UTC)",
    )
    created_at: datetime = Field(
        sa_type=DateTime(timezone=True),
        default_factory=utc_now,
        description="Creation timestamp (UTC)",
    )
    updated_at: datetime = Field(
        sa_type=DateTime(timezone=True),
        default_factory=utc_now,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)",
    )

    # Relationships
    user: "User" = Relationship(back_populates="credentials")


class CredentialCreate(SQLModel):
    """Schema for creating a new credential.

    ``value`` and ``refresh_token`` are plaintext and will be encrypted.
    """

    name: str = Field(max_length=255, min_length=1)
    type: CredentialType
    value: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None


class CredentialRead(CredentialBase):
    """Schema for reading credential data (excludes encrypted values)."""

    id: str
    user_id: str
    expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
