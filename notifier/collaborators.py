#!/usr/bin/env python3
"""
Read-only collaborators consumed by the pipeline.

Persistence of preferences, presence tracking and push-token registration
live in other services. The pipeline only needs these narrow lookups; the
in-memory implementations back tests and single-process deployments.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

from notifier.models import UserPreferences


class PreferenceStore(ABC):
    """Source of stored per-user notification preferences."""

    @abstractmethod
    def get_channel_preferences(self, recipient_id: str) -> Optional[UserPreferences]:
        """Return stored preferences, or None if the user has none."""
        pass


class PresenceLookup(ABC):
    """Answers whether a recipient currently has a live session."""

    @abstractmethod
    def is_online(self, recipient_id: str) -> bool:
        pass


class PushTokenLookup(ABC):
    """Answers whether a recipient has any registered push tokens."""

    @abstractmethod
    def has_push_tokens(self, recipient_id: str) -> bool:
        pass


class InMemoryPreferenceStore(PreferenceStore):

    def __init__(self, preferences: Optional[Dict[str, UserPreferences]] = None):
        self._preferences: Dict[str, UserPreferences] = dict(preferences or {})
        self._lock = threading.Lock()

    def set_preferences(self, recipient_id: str, preferences) -> None:
        if isinstance(preferences, dict):
            preferences = UserPreferences.model_validate(preferences)
        with self._lock:
            self._preferences[recipient_id] = preferences

    def get_channel_preferences(self, recipient_id: str) -> Optional[UserPreferences]:
        with self._lock:
            return self._preferences.get(recipient_id)


class InMemoryPresence(PresenceLookup):

    def __init__(self, online: Optional[Set[str]] = None):
        self._online: Set[str] = set(online or ())
        self._lock = threading.Lock()

    def set_online(self, recipient_id: str, online: bool = True) -> None:
        with self._lock:
            if online:
                self._online.add(recipient_id)
            else:
                self._online.discard(recipient_id)

    def is_online(self, recipient_id: str) -> bool:
        with self._lock:
            return recipient_id in self._online


class InMemoryPushTokens(PushTokenLookup):

    def __init__(self):
        self._tokens: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def register(self, recipient_id: str, token: str) -> None:
        with self._lock:
            self._tokens.setdefault(recipient_id, set()).add(token)

    def unregister(self, recipient_id: str, token: str) -> None:
        with self._lock:
            tokens = self._tokens.get(recipient_id)
            if tokens:
                tokens.discard(token)
                if not tokens:
                    del self._tokens[recipient_id]

    def has_push_tokens(self, recipient_id: str) -> bool:
        with self._lock:
            return bool(self._tokens.get(recipient_id))
