"""Authenticated-session lookup for sync runs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from orbits.models import AuthSession

logger = logging.getLogger(__name__)

DEFAULT_SESSION_PATH = Path.home() / ".orbits" / "session.json"


class SessionProvider(Protocol):
    """Source of the currently signed-in user."""

    async def current_session(self) -> AuthSession | None:
        """Return the active session, or ``None`` when nobody is signed in."""
        ...


class StaticSessionProvider:
    def __init__(self, session: AuthSession | None) -> None:
        self._session = session

    async def current_session(self) -> AuthSession | None:
        return self._session


class FileSessionProvider:
    """Reads the session document left behind by the sign-in flow.

    A missing, empty or malformed file means there is no session.
    """

    def __init__(self, path: Path = DEFAULT_SESSION_PATH) -> None:
        self._path = Path(path).expanduser()

    async def current_session(self) -> AuthSession | None:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Cannot read session file %s: %s", self._path, exc)
            return None
        if not raw.strip():
            return None
        try:
            payload = json.loads(raw)
            return AuthSession.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self._path, exc)
            return None
