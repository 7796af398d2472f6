#!/usr/bin/env python3
"""
Notifier data model.

NotificationRequest is the unit of work entering the pipeline. It is validated
(and its free text sanitized) on construction, so anything that reaches the
Dispatcher is well-formed.
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from notifier.exceptions import NotificationValidationError

TITLE_MAX_LENGTH = 200
BODY_MAX_LENGTH = 2000

_HTML_TAG_RE = re.compile(r"<[^>]*>")


class PriorityHint(str, Enum):
    """Advisory urgency supplied by the caller."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class Channel(str, Enum):
    """Delivery channels, in the order the selector emits them."""
    IN_APP = "in_app"
    WEBSOCKET = "websocket"
    EMAIL = "email"
    PUSH = "push"
    CHAT = "chat"


CHANNEL_ORDER = [c.value for c in Channel]

KNOWN_NOTIFICATION_TYPES = frozenset({
    'task_assigned', 'task_completed', 'task_overdue', 'task_escalated', 'task_updated',
    'workflow_completed', 'workflow_failed', 'workflow_started',
    'system_announcement', 'maintenance', 'feature_update', 'security_alert', 'system_critical',
    'user_mention', 'comment_added', 'file_shared',
    'deadline_reminder', 'deadline_critical', 'meeting_reminder',
    'approval_request', 'approval_urgent', 'approval_granted', 'approval_denied',
    'digest',
})


def strip_html(text: str) -> str:
    """Remove HTML tags from a string."""
    return _HTML_TAG_RE.sub('', text)


class NotificationRequest(BaseModel):
    """A candidate notification for one recipient."""

    recipient_id: str = Field(min_length=1)
    type: str = "general"
    title: str
    body: str
    priority_hint: PriorityHint = PriorityHint.MEDIUM
    payload: Dict[str, Any] = Field(default_factory=dict)
    requested_channels: Optional[List[str]] = None
    emergency: bool = False
    created_at: float = Field(default_factory=time.time)

    @field_validator('recipient_id', 'type')
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator('title')
    @classmethod
    def _clean_title(cls, value: str) -> str:
        value = strip_html(value).strip()
        if not value:
            raise ValueError("Title is required and cannot be empty")
        if len(value) > TITLE_MAX_LENGTH:
            raise ValueError(f"Title cannot exceed {TITLE_MAX_LENGTH} characters")
        return value

    @field_validator('body')
    @classmethod
    def _clean_body(cls, value: str) -> str:
        value = strip_html(value).strip()
        if not value:
            raise ValueError("Body is required and cannot be empty")
        if len(value) > BODY_MAX_LENGTH:
            raise ValueError(f"Body cannot exceed {BODY_MAX_LENGTH} characters")
        return value

    @field_validator('requested_channels')
    @classmethod
    def _normalize_channels(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return [c.strip().lower() for c in value if c and c.strip()]

    @property
    def is_known_type(self) -> bool:
        return self.type in KNOWN_NOTIFICATION_TYPES

    @classmethod
    def parse(cls, data: Any) -> "NotificationRequest":
        """
        Build a request from a dict (or pass an existing request through).

        Raises:
            NotificationValidationError: if the payload is malformed
        """
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise NotificationValidationError(
                f"Invalid notification request: {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            ) from e


class QuietHours(BaseModel):
    """A daily quiet window in HH:MM, optionally crossing midnight."""
    enabled: bool = True
    start: str
    end: str
    timezone: Optional[str] = None


class ChannelPreference(BaseModel):
    """Effective preference for one channel."""
    enabled: bool = True
    always_enabled: bool = False
    webhook_url: Optional[str] = None
    # Kept raw: malformed quiet-hours data must degrade, not fail validation.
    quiet_hours: Optional[Dict[str, Any]] = None


class UserPreferences(BaseModel):
    """Stored per-user preferences, as returned by the preference collaborator."""
    channels: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    type_overrides: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)
    quiet_hours: Optional[Dict[str, Any]] = None
    timezone: Optional[str] = None


@dataclass
class ChannelPreferenceSet:
    """Resolved per-channel preferences for one (recipient, type) pair."""
    channels: Dict[str, ChannelPreference]
    quiet_hours_active: bool = False
    suppressed_channels: List[str] = field(default_factory=list)

    def get(self, channel: str) -> Optional[ChannelPreference]:
        return self.channels.get(channel)

    def is_enabled(self, channel: str) -> bool:
        pref = self.channels.get(channel)
        return bool(pref and pref.enabled)


@dataclass
class RecipientContext:
    """
    Live context about the recipient at dispatch time.

    ``recipient_online`` and ``has_push_tokens`` may be left as None, in which
    case the Dispatcher asks the presence and push-token collaborators.
    """
    recipient_online: Optional[bool] = None
    has_push_tokens: Optional[bool] = None
    is_mobile_user: bool = False
    role: Optional[str] = None
    last_seen_at: Optional[float] = None
    timezone: Optional[str] = None
    email: Optional[str] = None


@dataclass
class ChannelFailure:
    """Why a selected channel did not deliver."""
    channel: str
    reason: str
    detail: Optional[str] = None


@dataclass
class DispatchResult:
    """Per-channel outcome of one dispatch."""
    channels_attempted: List[str] = field(default_factory=list)
    channels_succeeded: List[str] = field(default_factory=list)
    channels_failed: List[ChannelFailure] = field(default_factory=list)
    suppressed_as_duplicate: bool = False
    rate_limited: bool = False
    admission: Optional[Any] = None
    score: Optional[int] = None
    request_type: Optional[str] = None

    @property
    def partial_failure(self) -> bool:
        return bool(self.channels_failed) and bool(self.channels_succeeded)

    def failure_reasons(self) -> Dict[str, str]:
        return {f.channel: f.reason for f in self.channels_failed}

    def to_dict(self) -> Dict[str, Any]:
        admission = self.admission.to_dict() if hasattr(self.admission, 'to_dict') else None
        return {
            'channels_attempted': list(self.channels_attempted),
            'channels_succeeded': list(self.channels_succeeded),
            'channels_failed': [
                {'channel': f.channel, 'reason': f.reason, 'detail': f.detail}
                for f in self.channels_failed
            ],
            'suppressed_as_duplicate': self.suppressed_as_duplicate,
            'rate_limited': self.rate_limited,
            'admission': admission,
            'score': self.score,
            'request_type': self.request_type,
        }


@dataclass
class Delivery:
    """Everything a sink needs to deliver one notification on one channel."""
    request: NotificationRequest
    channel: str
    context: RecipientContext
    preference: ChannelPreference
    score: int
