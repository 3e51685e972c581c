"""
Profile storage bound to the current request.

Indirect logins are kept in the signed session cookie; profiles found by
direct clients live on ``request.state`` for the duration of the request.

The logout registry records the session indexes (CAS service tickets)
destroyed by identity-provider back-channel logout. A session cookie cannot
be deleted from the server side, so profiles bound to a destroyed index are
dropped the next time the session is read.
"""

import logging
import time
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple

from fastapi import Request

from authdemo.models import UserProfile

logger = logging.getLogger(__name__)

SESSION_PROFILES_KEY = "authdemo.profiles"
SESSION_REQUESTED_URL_KEY = "authdemo.requested_url"

# matches the default session cookie lifetime
DEFAULT_REGISTRY_TTL_SECONDS = 14 * 24 * 60 * 60
DEFAULT_REGISTRY_MAX_ENTRIES = 10000


class LogoutRegistry:
    """
    In-process record of sessions ended by the identity provider.

    Entries expire after ``ttl`` seconds, the lifetime of the session cookie
    they refer to, and each map holds at most ``max_entries`` (oldest evicted).
    """

    def __init__(
        self,
        ttl: float = DEFAULT_REGISTRY_TTL_SECONDS,
        max_entries: int = DEFAULT_REGISTRY_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        # session index -> (user id, login time)
        self._active: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        # session index -> logout time
        self._destroyed: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._active) + len(self._destroyed)

    def record_login(self, session_index: str, user_id: str) -> None:
        now = self._clock()
        self._purge(now)
        self._destroyed.pop(session_index, None)
        self._active.pop(session_index, None)
        self._active[session_index] = (user_id, now)
        self._trim(self._active)

    def destroy(self, session_index: str) -> bool:
        """
        Mark the login bound to ``session_index`` as logged out.

        Unknown or expired indexes are ignored.

        Returns:
            True if a login was known for this index
        """
        now = self._clock()
        self._purge(now)
        entry = self._active.pop(session_index, None)
        if entry is None:
            logger.info("Back-channel logout for unknown session", extra={"session_index": session_index})
            return False

        self._destroyed[session_index] = now
        self._trim(self._destroyed)
        logger.info(
            "Back-channel logout",
            extra={"session_index": session_index, "user_id": entry[0]},
        )
        return True

    def is_destroyed(self, session_index: Optional[str]) -> bool:
        if not session_index:
            return False
        destroyed_at = self._destroyed.get(session_index)
        return destroyed_at is not None and self._clock() - destroyed_at < self.ttl

    def _purge(self, now: float) -> None:
        while self._active and now - next(iter(self._active.values()))[1] >= self.ttl:
            self._active.popitem(last=False)
        while self._destroyed and now - next(iter(self._destroyed.values())) >= self.ttl:
            self._destroyed.popitem(last=False)

    def _trim(self, entries: OrderedDict) -> None:
        while len(entries) > self.max_entries:
            entries.popitem(last=False)


class ProfileManager:
    """Read and write the profiles of the current request."""

    def __init__(self, request: Request, logout_registry: Optional[LogoutRegistry] = None):
        self.request = request
        self.logout_registry = logout_registry

    def get_all(self, read_from_session: bool = True) -> List[UserProfile]:
        profiles = list(getattr(self.request.state, "profiles", []))
        if read_from_session:
            profiles.extend(self._session_profiles())
        return profiles

    def get(self, read_from_session: bool = True) -> Optional[UserProfile]:
        profiles = self.get_all(read_from_session)
        return profiles[0] if profiles else None

    def save(self, save_in_session: bool, profile: UserProfile) -> None:
        """Store ``profile``, replacing any previous one."""
        if save_in_session:
            self.request.session[SESSION_PROFILES_KEY] = [profile.model_dump(mode="json")]
        self.request.state.profiles = [profile]

    def remove(self, remove_from_session: bool = True) -> None:
        if remove_from_session:
            self.request.session.pop(SESSION_PROFILES_KEY, None)
        self.request.state.profiles = []

    def _session_profiles(self) -> List[UserProfile]:
        stored = self.request.session.get(SESSION_PROFILES_KEY) or []
        profiles = [UserProfile.model_validate(data) for data in stored]
        if self.logout_registry is None:
            return profiles

        live = [p for p in profiles if not self.logout_registry.is_destroyed(p.session_index)]
        if len(live) != len(profiles):
            logger.info("Dropping profiles ended by back-channel logout")
            if live:
                self.request.session[SESSION_PROFILES_KEY] = [p.model_dump(mode="json") for p in live]
            else:
                self.request.session.pop(SESSION_PROFILES_KEY, None)
        return live
