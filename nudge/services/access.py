"""
Access policy — the one place that knows who may bypass the global switch.

Resolved once per user per policy instance; the engine gets a fresh policy
per request, so a settings change takes effect on the next request.
"""
from __future__ import annotations

import logging
from typing import Iterable, Protocol

logger = logging.getLogger(__name__)


class AccessPolicy(Protocol):
    def has_override_access(self, user_id: str) -> bool:
        ...


class SettingsAccessPolicy:
    """Allow-list from configuration, plus an all-access switch for development."""

    def __init__(self, override_user_ids: Iterable[str] = (), dev_mode: bool = False):
        self._override_user_ids = frozenset(override_user_ids)
        self._dev_mode = dev_mode
        self._resolved: dict[str, bool] = {}

    @classmethod
    def from_settings(cls, settings) -> "SettingsAccessPolicy":
        return cls(
            override_user_ids=settings.override_user_ids,
            dev_mode=settings.DEV_MODE_OVERRIDE and settings.APP_ENV == "development",
        )

    def has_override_access(self, user_id: str) -> bool:
        if user_id not in self._resolved:
            granted = self._dev_mode or user_id in self._override_user_ids
            if granted:
                logger.debug("override access granted to %s", user_id)
            self._resolved[user_id] = granted
        return self._resolved[user_id]


class NoOverridePolicy:
    def has_override_access(self, user_id: str) -> bool:
        return False
