#!/usr/bin/env python3
"""
Channel Selector - gates each channel on preference, score and recipient context.
"""

import logging
from typing import List, Optional

from core.config_loader import PriorityConfig
from notifier.models import CHANNEL_ORDER, ChannelPreferenceSet, RecipientContext

logger = logging.getLogger(__name__)

CHAT_TYPE_PREFIXES = ('task_', 'workflow_')
CHAT_EXTRA_TYPES = ('system_announcement',)


class ChannelSelector:
    """
    Pure function of (preferences, score, context, type, requested channels).

    Channels are always returned in the fixed order
    in_app, websocket, email, push, chat.
    """

    def __init__(self, config: Optional[PriorityConfig] = None):
        self.config = config or PriorityConfig()

    @staticmethod
    def _is_chat_type(request_type: str) -> bool:
        return request_type.startswith(CHAT_TYPE_PREFIXES) or request_type in CHAT_EXTRA_TYPES

    def select(
        self,
        prefs: ChannelPreferenceSet,
        score: int,
        context: Optional[RecipientContext] = None,
        request_type: str = "general",
        requested_channels: Optional[List[str]] = None
    ) -> List[str]:
        context = context or RecipientContext()
        online = bool(context.recipient_online)
        selected = []

        if prefs.is_enabled('in_app'):
            selected.append('in_app')

        if prefs.is_enabled('websocket') and online:
            selected.append('websocket')

        email = prefs.get('email')
        if email and email.enabled:
            if score >= self.config.high_threshold or email.always_enabled or not online:
                selected.append('email')

        push = prefs.get('push')
        if push and push.enabled and context.has_push_tokens:
            if score > self.config.low_threshold or push.always_enabled or context.is_mobile_user:
                selected.append('push')

        chat = prefs.get('chat')
        if chat and chat.enabled and chat.webhook_url:
            if self._is_chat_type(request_type) or chat.always_enabled:
                selected.append('chat')

        if requested_channels is not None:
            wanted = set(requested_channels)
            unknown = wanted.difference(CHANNEL_ORDER)
            if unknown:
                logger.warning(f"Ignoring unknown requested channels: {sorted(unknown)}")
            selected = [c for c in selected if c in wanted]

        return [c for c in CHANNEL_ORDER if c in selected]
