"""Message template contracts, including interactive button and list payloads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field


class ButtonType(str, Enum):
    reply = "reply"
    url = "url"
    call = "call"
    copy = "copy"


class Button(BaseModel):
    id: str
    display_text: str
    type: ButtonType = ButtonType.reply
    payload: str | None = None
    url: str | None = None
    phone_number: str | None = None
    copy_text: str | None = None

    class Config:
        str_strip_whitespace = True


class ListItem(BaseModel):
    id: str
    title: str
    description: str | None = None
    row_id: str | None = None

    class Config:
        str_strip_whitespace = True


class ListSection(BaseModel):
    title: str
    rows: list[ListItem] = Field(default_factory=list)


class InteractiveType(str, Enum):
    button = "button"
    list = "list"


class InteractiveMessage(BaseModel):
    type: InteractiveType
    body: str
    header: str | None = None
    footer: str | None = None
    buttons: list[Button] = Field(default_factory=list)
    sections: list[ListSection] = Field(default_factory=list)
    button_text: str | None = None


class TemplateCategory(str, Enum):
    greeting = "greeting"
    support = "support"
    notification = "notification"
    promotion = "promotion"
    survey = "survey"
    other = "other"


class MessageType(str, Enum):
    text = "text"
    interactive = "interactive"


class TemplateStatus(str, Enum):
    draft = "draft"
    active = "active"
    inactive = "inactive"


class VariableType(str, Enum):
    string = "string"
    number = "number"
    email = "email"
    phone = "phone"


class TemplateVariable(BaseModel):
    name: str
    description: str | None = None
    required: bool = False
    type: VariableType = VariableType.string


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class TemplateMetadata(BaseModel):
    priority: Priority = Priority.medium
    retry_count: int = Field(default=0, ge=0)
    expires_at: datetime | None = None
    custom_data: Any = None


class TemplateValidation(NamedTuple):
    is_valid: bool
    errors: list[str]


class Template(BaseModel):
    name: str
    created_by: str
    description: str | None = None
    category: TemplateCategory = TemplateCategory.other
    message_type: MessageType = MessageType.text
    content: str | None = None
    interactive: InteractiveMessage | None = None
    variables: list[TemplateVariable] = Field(default_factory=list)
    language: str = "en"
    status: TemplateStatus = TemplateStatus.draft
    updated_by: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)

    class Config:
        str_strip_whitespace = True

    @property
    def body(self) -> str | None:
        if self.message_type == MessageType.text:
            return self.content
        return self.interactive.body if self.interactive else None

    @property
    def preview(self) -> str:
        return self.body or ""

    def validate_template(self) -> TemplateValidation:
        """Check the structural rules a template must satisfy before it can be sent."""
        errors: list[str] = []
        if not self.name.strip():
            errors.append("Template name is required")

        if self.message_type == MessageType.text:
            if not self.content or not self.content.strip():
                errors.append("Content is required for text templates")
        elif self.interactive is None:
            errors.append("Interactive message configuration is required")
        else:
            if not self.interactive.body.strip():
                errors.append("Interactive message body is required")
            if self.interactive.type == InteractiveType.button and not self.interactive.buttons:
                errors.append("At least one button is required for button-type interactive messages")
            if self.interactive.type == InteractiveType.list and not self.interactive.sections:
                errors.append("At least one section is required for list-type interactive messages")

        return TemplateValidation(is_valid=not errors, errors=errors)

    def render(self, values: dict[str, Any] | None = None) -> str | None:
        """Substitute ``{{name}}`` placeholders for the declared variables present in ``values``."""
        content = self.body
        if not content:
            return content
        values = values or {}
        for variable in self.variables:
            if variable.name in values:
                content = content.replace(f"{{{{{variable.name}}}}}", str(values[variable.name]))
        return content
