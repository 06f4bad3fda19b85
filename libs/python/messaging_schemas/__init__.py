"""Shared schema exports."""

from .contact import Contact, ContactStatus
from .template import (
    Button,
    ButtonType,
    InteractiveMessage,
    InteractiveType,
    ListItem,
    ListSection,
    MessageType,
    Template,
    TemplateCategory,
    TemplateStatus,
    TemplateValidation,
    TemplateVariable,
)

__all__ = [
    "Button",
    "ButtonType",
    "Contact",
    "ContactStatus",
    "InteractiveMessage",
    "InteractiveType",
    "ListItem",
    "ListSection",
    "MessageType",
    "Template",
    "TemplateCategory",
    "TemplateStatus",
    "TemplateValidation",
    "TemplateVariable",
]
