"""Session providers scoping which tenant a pipeline run touches."""

from __future__ import annotations

import hmac
from typing import Iterable, Optional, Protocol

from substack_intel.core.models import Session


class SessionProvider(Protocol):
    def get_session(self) -> Optional[Session]:
        ...


class StaticSessionProvider:
    """Fixed session for CLI and scheduled runs."""

    def __init__(self, user_id: str = "default", permissions: Iterable[str] = ("*",)):
        self._session = Session(user_id=user_id, permissions=list(permissions))

    def get_session(self) -> Optional[Session]:
        return self._session


class BearerTokenSessionProvider:
    """
    Validates ``Authorization: Bearer <token>`` headers.

    Without a configured token every request is rejected.
    """

    def __init__(self, token: Optional[str], user_id: str = "default", permissions: Iterable[str] = ("*",)):
        self._token = token
        self.user_id = user_id
        self.permissions = list(permissions)
        self._authorization: Optional[str] = None

    def with_header(self, authorization: Optional[str]) -> "BearerTokenSessionProvider":
        provider = BearerTokenSessionProvider(self._token, self.user_id, self.permissions)
        provider._authorization = authorization
        return provider

    def get_session(self) -> Optional[Session]:
        return self.session_for(self._authorization)

    def session_for(self, authorization: Optional[str]) -> Optional[Session]:
        if not self._token or not authorization:
            return None
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() != "bearer" or not credentials:
            return None
        if not hmac.compare_digest(credentials.strip().encode(), self._token.encode()):
            return None
        return Session(user_id=self.user_id, permissions=self.permissions)
