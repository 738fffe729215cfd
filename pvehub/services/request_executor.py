"""
请求执行器 (Request Executor)

对单个端点的所有 REST 调用都经过这里：按需认证、401 时重新认证一次、
瞬时故障按 RetryPolicy 线性退避重试，并根据调用结果维护端点的 ConnectionStatus。

All REST calls to one endpoint go through this class. It authenticates on demand,
re-authenticates once on 401, retries transient failures with a linear backoff,
and is the only writer of the endpoint's ConnectionStatus.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from pvehub.core.exceptions import AuthError, RemoteApiError, TransientError
from pvehub.models.endpoint import ConnectionState, ConnectionStatus, EndpointConfig, Session
from pvehub.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

MUTATING_METHODS = {"POST", "PUT", "DELETE"}

StatusCallback = Callable[[ConnectionStatus], None]


@dataclass(frozen=True)
class RetryPolicy:
    """线性退避：第 n 次重试前等待 n * base_delay 秒。"""
    max_retries: int = 3
    base_delay: float = 1.0

    def delay(self, attempt: int) -> float:
        return attempt * self.base_delay


class RequestExecutor:
    """Executes authenticated calls against one endpoint."""

    def __init__(
        self,
        config: EndpointConfig,
        retry_policy: Optional[RetryPolicy] = None,
        on_status_change: Optional[StatusCallback] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self.sessions = SessionManager(config)
        self.status = ConnectionStatus(
            endpoint_id=config.id,
            name=config.display_name,
            host=config.host,
            port=config.port,
        )
        # 凭据被明确拒绝后置位，轮询器跳过该端点，直到 test() 成功
        self.credentials_rejected = False
        self._on_status_change = on_status_change
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                # 集群普遍使用自签名证书
                verify=False,
                transport=self._transport,
            )
        return self._client

    def _set_status(self, state: ConnectionState, error: Optional[str] = None) -> None:
        previous = (self.status.status, self.status.last_error)
        updates: dict[str, Any] = {"status": state, "last_error": error}
        if state == ConnectionState.CONNECTED:
            updates["last_connected_at"] = datetime.now(timezone.utc)
        self.status = self.status.model_copy(update=updates)
        if previous != (state, error):
            if state == ConnectionState.ERROR:
                logger.warning("Endpoint %s status -> %s: %s", self.config.id, state.value, error)
            else:
                logger.info("Endpoint %s status -> %s", self.config.id, state.value)
            if self._on_status_change is not None:
                try:
                    self._on_status_change(self.status)
                except Exception:
                    logger.exception("Status change callback failed for %s", self.config.id)

    @staticmethod
    def _headers(session: Session, method: str) -> dict:
        headers = {"Cookie": f"PVEAuthCookie={session.ticket}"}
        if method in MUTATING_METHODS:
            headers["CSRFPreventionToken"] = session.csrf_token
        return headers

    async def execute(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """Perform one API call and return the ``data`` member of the response.

        Raises:
            AuthError: credentials rejected, or a 401 persisted after re-authentication.
            TransientError: network failures or 5xx responses outlasted the retries.
            RemoteApiError: any other 4xx answer.
        """
        method = method.upper()
        retries = self.retry_policy.max_retries if max_retries is None else max_retries
        attempt = 0
        reauthenticated = False

        while True:
            client = await self._get_client()
            cause: Optional[str] = None
            try:
                session = await self.sessions.ensure(client)
                resp = await client.request(
                    method,
                    path,
                    headers=self._headers(session, method),
                    params=params,
                    json=body if method in MUTATING_METHODS and body is not None else None,
                )
            except AuthError as e:
                if not e.transient:
                    self.credentials_rejected = True
                    self._set_status(ConnectionState.ERROR, e.message)
                    raise
                cause = e.message
            except httpx.TransportError as e:
                cause = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            else:
                if resp.status_code == 401:
                    self.sessions.invalidate(session)
                    if reauthenticated:
                        msg = "Authentication rejected after re-authentication"
                        self._set_status(ConnectionState.ERROR, msg)
                        raise AuthError(msg)
                    logger.info("Session for %s rejected, re-authenticating", self.config.id)
                    reauthenticated = True
                    continue
                # 501 表示端点不支持该调用，重试无意义
                if resp.status_code >= 500 and resp.status_code != 501:
                    cause = f"HTTP {resp.status_code}: {_reason(resp)}"
                elif resp.status_code >= 400:
                    # 端点给出了明确答复，连接本身是健康的
                    self._set_status(ConnectionState.CONNECTED)
                    raise RemoteApiError(
                        f"{method} {path} failed: HTTP {resp.status_code}",
                        upstream_status=resp.status_code,
                        detail=_reason(resp),
                    )
                else:
                    self.credentials_rejected = False
                    self._set_status(ConnectionState.CONNECTED)
                    return _data(resp)

            if attempt >= retries:
                self._set_status(ConnectionState.ERROR, cause)
                raise TransientError(
                    f"{method} {path} failed after {attempt + 1} attempt(s)", detail=cause
                )
            attempt += 1
            delay = self.retry_policy.delay(attempt)
            logger.debug(
                "Transient failure on %s %s (%s), retry %d/%d in %.1fs",
                method, path, cause, attempt, retries, delay,
            )
            await self._sleep(delay)

    async def test(self) -> bool:
        """用全新会话认证并请求 /version，不抛出异常。"""
        self.sessions.invalidate()
        try:
            await self.execute("GET", "/version", max_retries=0)
        except (AuthError, TransientError, RemoteApiError) as e:
            logger.info("Connection test for %s failed: %s", self.config.id, e.message)
            return False
        return True

    async def close(self) -> None:
        """登出：丢弃会话、关闭 HTTP 客户端，状态置为 disconnected。"""
        self.sessions.invalidate()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._set_status(ConnectionState.DISCONNECTED)


def _data(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict):
        return payload.get("data")
    return payload


def _reason(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.reason_phrase or resp.text[:200]
    if isinstance(payload, dict):
        if payload.get("errors"):
            return str(payload["errors"])
        if payload.get("message"):
            return str(payload["message"])
    return resp.reason_phrase
