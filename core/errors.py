# core/errors.py — error taxonomy for the bot core
from __future__ import annotations


class ZoneGuardError(Exception):
    """Base class for all bot-core errors."""


class AlreadyActive(ZoneGuardError):
    """A report session is already running for this user."""

    def __init__(self, user_id: str):
        super().__init__(f"Report session already active for {user_id}")
        self.user_id = user_id


class NoActiveSession(ZoneGuardError):
    """An artifact arrived for a user with no live report session."""

    def __init__(self, user_id: str):
        super().__init__(f"No active report session for {user_id}")
        self.user_id = user_id


class UpstreamUnavailable(ZoneGuardError):
    """An external collaborator (LINE API, storage, DB, webhook) failed."""

    def __init__(self, service: str, detail: str = ""):
        msg = f"Upstream '{service}' unavailable"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.service = service
        self.detail = detail
