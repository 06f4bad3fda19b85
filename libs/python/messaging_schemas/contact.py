"""Contact record contract shared by the messaging services."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

E164_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


class ContactStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    blocked = "blocked"
    archived = "archived"


class Contact(BaseModel):
    phone_number: str
    created_by: str
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    email: EmailStr | None = None
    profile_picture: str | None = None
    status: ContactStatus = ContactStatus.active
    is_whatsapp_user: bool = True
    last_seen: datetime | None = None
    is_favorite: bool = False
    tags: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    notes: str = ""
    custom_fields: dict[str, str] = Field(default_factory=dict)
    updated_by: str | None = None
    deleted_at: datetime | None = None

    class Config:
        str_strip_whitespace = True

    @field_validator("phone_number")
    @classmethod
    def _check_phone_number(cls, value: str) -> str:
        if not E164_PATTERN.match(value):
            raise ValueError("Invalid phone number format. Use E.164 format (e.g., +1234567890)")
        return value

    @field_validator("email", mode="before")
    @classmethod
    def _normalise_email(cls, value: str | None) -> str | None:
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value

    @field_validator("tags")
    @classmethod
    def _strip_tags(cls, value: list[str]) -> list[str]:
        return [tag.strip() for tag in value if tag.strip()]

    @model_validator(mode="after")
    def _default_display_name(self) -> "Contact":
        if not self.display_name:
            self.display_name = self.full_name
        return self

    @property
    def full_name(self) -> str:
        """First and last name, falling back to the display name and then the phone number."""
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.display_name or self.phone_number

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self, now: datetime) -> "Contact":
        return self.model_copy(update={"deleted_at": now, "status": ContactStatus.archived})

    def restore(self) -> "Contact":
        return self.model_copy(update={"deleted_at": None, "status": ContactStatus.active})
