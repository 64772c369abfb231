"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    User roles, as issued by the user directory.

    - SUB_CONSULTANT: External partner working referrals
    - INTERNAL_TEAM: Internal staff assigned to cases
    - MANAGEMENT: Sees every case and conversation, runs admin reports
    """
    SUB_CONSULTANT = "sub_consultant"
    INTERNAL_TEAM = "internal_team"
    MANAGEMENT = "management"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_


class ConversationStatus(str, Enum):
    """Conversation lifecycle. Conversations are archived, never deleted."""
    ACTIVE = "active"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class ConversationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MessageType(str, Enum):
    """
    How a message is rendered.

    - TEXT: Plain text from a participant or external sender
    - FILE: Carries an attachment (content may be empty)
    - SYSTEM: Generated on status/priority/membership changes
    """
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


class ExternalChannel(str, Enum):
    """External messaging channels bridged into conversations."""
    WHATSAPP = "whatsapp"
