#!/usr/bin/env python3
"""
Priority Engine - urgency scoring and preference resolution.

Usage:
    engine = PriorityEngine(PriorityConfig(), preference_store)
    score = engine.score(request, context)                 # 0..100
    prefs = engine.resolve_preferences("user1", "task_assigned")
"""

import logging
import time
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.config_loader import PriorityConfig
from notifier.collaborators import PreferenceStore
from notifier.models import (
    CHANNEL_ORDER, ChannelPreference, ChannelPreferenceSet,
    NotificationRequest, RecipientContext, UserPreferences,
)

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PREFERENCES: Dict[str, Dict[str, Any]] = {
    'in_app': {'enabled': True},
    'websocket': {'enabled': True},
    'email': {'enabled': True},
    'push': {'enabled': False},
    'chat': {'enabled': False, 'webhook_url': None},
}


def _resolve_timezone(tz_name: Optional[str]) -> tzinfo:
    """Return the named zone, or UTC if it is missing or unknown."""
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        logger.warning(f"Unknown timezone '{tz_name}', falling back to UTC")
        return timezone.utc


def _parse_hhmm(value: Any) -> int:
    """Parse "HH:MM" into minutes from midnight. Raises ValueError if malformed."""
    if not isinstance(value, str):
        raise ValueError(f"Expected HH:MM string, got {value!r}")
    hours, minutes = value.strip().split(':')
    hours, minutes = int(hours), int(minutes)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Time out of range: {value!r}")
    return hours * 60 + minutes


class PriorityEngine:
    """Computes urgency scores and effective channel preferences."""

    def __init__(
        self,
        config: Optional[PriorityConfig] = None,
        preference_store: Optional[PreferenceStore] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or PriorityConfig()
        self.preference_store = preference_store
        self._clock = clock

    def _local_time(self, tz_name: Optional[str]) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=_resolve_timezone(tz_name))

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(self, request: NotificationRequest, context: Optional[RecipientContext] = None) -> int:
        """
        Urgency score in [0, 100].

        Starts from the priority hint, adds the type adjustment and
        recipient-specific boosts, then applies the time-of-day adjustment in
        the recipient's timezone.
        """
        context = context or RecipientContext()
        cfg = self.config

        score = cfg.base_scores.get(request.priority_hint.value, 50)
        score += cfg.type_adjustments.get(request.type, 0)

        payload = request.payload or {}
        assigned_to = payload.get('assigned_to')
        if assigned_to is not None and str(assigned_to) == request.recipient_id:
            score += cfg.direct_assignment_bonus

        if context.role == 'manager' and payload.get('team_related'):
            score += cfg.manager_team_bonus

        if context.last_seen_at is not None:
            if self._clock() - context.last_seen_at < cfg.recent_activity_seconds:
                score += cfg.recent_activity_bonus

        hour = self._local_time(context.timezone).hour
        start, end = cfg.business_hours
        if start <= hour <= end:
            score += cfg.business_hours_bonus
        elif hour >= cfg.night_start_hour or hour <= cfg.night_end_hour:
            score -= cfg.night_penalty

        return max(0, min(100, score))

    # ------------------------------------------------------------------
    # Quiet hours
    # ------------------------------------------------------------------

    def is_in_quiet_hours(self, quiet_hours: Optional[Dict[str, Any]], tz_name: Optional[str] = None) -> bool:
        """
        True if now falls inside the quiet window.

        Both ends are inclusive and the window may cross midnight
        (e.g. 22:00-08:00). Malformed configuration means "not quiet".
        """
        if not quiet_hours or not isinstance(quiet_hours, dict):
            return False
        if not quiet_hours.get('enabled', True):
            return False

        try:
            start = _parse_hhmm(quiet_hours.get('start'))
            end = _parse_hhmm(quiet_hours.get('end'))
        except (ValueError, AttributeError) as e:
            logger.warning(f"Ignoring malformed quiet hours {quiet_hours!r}: {e}")
            return False

        local = self._local_time(quiet_hours.get('timezone') or tz_name)
        current = local.hour * 60 + local.minute

        if start <= end:
            return start <= current <= end
        return current >= start or current <= end

    def is_urgent_type(self, notification_type: str) -> bool:
        return notification_type in self.config.urgent_types

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def _load_user_preferences(self, recipient_id: str) -> Optional[UserPreferences]:
        if self.preference_store is None:
            return None
        try:
            return self.preference_store.get_channel_preferences(recipient_id)
        except Exception as e:
            logger.warning(f"Preference lookup failed for {recipient_id}, using defaults: {e}")
            return None

    @staticmethod
    def _merge(
        resolved: Dict[str, Dict[str, Any]],
        overrides: Optional[Dict[str, Dict[str, Any]]]
    ) -> None:
        for channel, values in (overrides or {}).items():
            if channel in resolved and isinstance(values, dict):
                resolved[channel].update(values)

    def resolve_preferences(
        self,
        recipient_id: str,
        notification_type: str,
        timezone_hint: Optional[str] = None
    ) -> ChannelPreferenceSet:
        """
        Effective per-channel preferences for (recipient, type).

        Defaults, then stored user preferences, then per-type overrides, then
        quiet-hours suppression of the configured channels (push and email)
        unless the type is urgent. In-app and websocket are never suppressed.
        """
        resolved = {c: dict(DEFAULT_CHANNEL_PREFERENCES[c]) for c in CHANNEL_ORDER}
        user_prefs = self._load_user_preferences(recipient_id)
        tz_name = timezone_hint

        user_quiet_hours = None
        if user_prefs is not None:
            self._merge(resolved, user_prefs.channels)
            self._merge(resolved, user_prefs.type_overrides.get(notification_type))
            user_quiet_hours = user_prefs.quiet_hours
            tz_name = user_prefs.timezone or timezone_hint

        suppressed = []
        quiet_active = False
        if not self.is_urgent_type(notification_type):
            for channel in self.config.quiet_hours_channels:
                prefs = resolved.get(channel)
                if not prefs or not prefs.get('enabled'):
                    continue
                window = prefs.get('quiet_hours') or user_quiet_hours
                if self.is_in_quiet_hours(window, tz_name):
                    prefs['enabled'] = False
                    suppressed.append(channel)
                    quiet_active = True

        if suppressed:
            logger.debug(f"Quiet hours suppressed {suppressed} for {recipient_id}")

        channels = {}
        for channel, values in resolved.items():
            channels[channel] = _to_channel_preference(channel, values)
        return ChannelPreferenceSet(
            channels=channels,
            quiet_hours_active=quiet_active,
            suppressed_channels=suppressed,
        )


def _to_channel_preference(channel: str, values: Dict[str, Any]) -> ChannelPreference:
    known = {k: v for k, v in values.items() if k in ChannelPreference.model_fields}
    quiet_hours = known.get('quiet_hours')
    if quiet_hours is not None and not isinstance(quiet_hours, dict):
        logger.warning(f"Ignoring malformed quiet hours on {channel}: {quiet_hours!r}")
        known['quiet_hours'] = None
    try:
        return ChannelPreference(**known)
    except ValueError as e:
        logger.warning(f"Invalid preference for {channel}, using default: {e}")
        return ChannelPreference(**DEFAULT_CHANNEL_PREFERENCES[channel])

