"""
会话管理 (Session Manager)

每个端点持有一个 SessionManager，负责获取和失效 PVE 票据。
认证本身从不重试：重试策略由请求执行器统一决定。
"""
import asyncio
import logging
from typing import Optional

import httpx

from pvehub.core.exceptions import AuthError
from pvehub.models.endpoint import EndpointConfig, Session

logger = logging.getLogger(__name__)

TICKET_PATH = "/access/ticket"


class SessionManager:
    """Obtains and invalidates the ticket/CSRF pair for one endpoint."""

    def __init__(self, config: EndpointConfig):
        self.config = config
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Optional[Session]:
        return self._session

    def is_valid(self, session: Optional[Session]) -> bool:
        """True iff ``session`` is the current, not yet invalidated session."""
        return session is not None and session is self._session

    def invalidate(self, session: Optional[Session] = None) -> None:
        """丢弃当前会话；传入 session 时仅当它仍是当前会话才丢弃。"""
        if session is None or session is self._session:
            self._session = None

    async def ensure(self, client: httpx.AsyncClient) -> Session:
        """返回当前会话，不存在时先认证。"""
        session = self._session
        if session is not None:
            return session
        return await self.authenticate(client)

    async def authenticate(
        self, client: httpx.AsyncClient, stale: Optional[Session] = None
    ) -> Session:
        """Authenticate and install a fresh session.

        Callers that queued on the lock while another caller was authenticating
        reuse the session it produced, unless that session is the ``stale`` one
        they were replacing.
        """
        async with self._lock:
            current = self._session
            if current is not None and current is not stale:
                return current
            session = await self._login(client)
            self._session = session
            logger.info("Authenticated to %s as %s", self.config.id, session.username)
            return session

    async def _login(self, client: httpx.AsyncClient) -> Session:
        cfg = self.config
        form = {"username": cfg.login, "password": cfg.password.get_secret_value()}
        try:
            resp = await client.post(TICKET_PATH, data=form)
        except httpx.TransportError as e:
            raise AuthError(
                f"Cannot reach {cfg.host}:{cfg.port}: {type(e).__name__}",
                detail=str(e) or None,
                transient=True,
            ) from e

        if resp.status_code == 401:
            raise AuthError("Authentication failed: invalid username or password")
        if resp.status_code >= 500:
            raise AuthError(
                f"Authentication failed: server error {resp.status_code}", transient=True
            )
        if resp.status_code >= 400:
            raise AuthError(f"Authentication failed: HTTP {resp.status_code}")

        try:
            data = resp.json().get("data") or {}
            ticket = data["ticket"]
            csrf = data["CSRFPreventionToken"]
        except (ValueError, KeyError, AttributeError, TypeError) as e:
            raise AuthError("Authentication failed: malformed ticket response") from e
        if not ticket or not csrf:
            raise AuthError("Authentication failed: empty ticket in response")

        return Session(
            ticket=ticket,
            csrf_token=csrf,
            username=data.get("username") or cfg.login,
        )
