from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp

from app.services.errors import GatewayAuthError, GatewayError, GatewayProvisionError, GatewayUnavailableError
from app.services.gateway.panel import (
    ListenerConfig,
    PanelReply,
    PanelReplyKind,
    ProvisionedClient,
    ProvisionRequest,
    parse_panel_reply,
)
from app.services.gateway.secrets import decrypt_panel_password
from app.services.gateway.session_cache import SessionCache, SessionKey
from app.services.gateway.uri import build_connection_uri

log = logging.getLogger(__name__)

T = TypeVar("T")

DAY_MS = 24 * 60 * 60 * 1000


def session_key(server: Any) -> SessionKey:
    return (str(server.server_ip), str(server.xui_username))


class GatewayClient(ABC):
    """Everything the provisioning flow needs from one VPN panel.

    Subclasses implement the three panel calls; session caching, the single
    re-login on an expired session and the timeouts live here.
    """

    def __init__(
        self,
        *,
        session_cache: SessionCache | None = None,
        probe_timeout: float = 5,
        provision_timeout: float = 15,
    ) -> None:
        self.session_cache = session_cache or SessionCache()
        self.probe_timeout = probe_timeout
        self.provision_timeout = provision_timeout

    # ---- panel calls -------------------------------------------------------

    @abstractmethod
    async def _login(self, server: Any) -> str:
        """Return a session token or raise GatewayAuthError/GatewayUnavailableError."""

    @abstractmethod
    async def fetch_listener_config(self, server: Any, token: str) -> ListenerConfig: ...

    @abstractmethod
    async def provision_client(self, server: Any, token: str, request: ProvisionRequest) -> ProvisionedClient: ...

    # ---- shared behaviour --------------------------------------------------

    async def authenticate(self, server: Any) -> str:
        token = await self._login(server)
        self.session_cache.put(session_key(server), token)
        log.info("panel_login_ok server=%s", server.server_name)
        return token

    async def get_session(self, server: Any) -> tuple[str, bool]:
        """(token, from_cache)."""
        cached = self.session_cache.get(session_key(server))
        if cached:
            return cached, True
        return await self.authenticate(server), False

    async def with_session(self, server: Any, op: Callable[[str], Awaitable[T]]) -> T:
        token, from_cache = await self.get_session(server)
        try:
            return await op(token)
        except GatewayAuthError:
            self.session_cache.invalidate(session_key(server))
            if not from_cache:
                raise
            log.info("panel_session_rejected_relogin server=%s", server.server_name)
            token = await self.authenticate(server)
            return await op(token)

    def new_client(self, server: Any, request: ProvisionRequest, *, now_ms: int | None = None) -> ProvisionedClient:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        remark = f"{request.plan_kind}_{request.external_user_id}_{now_ms}"
        return ProvisionedClient(
            id=str(uuid.uuid4()),
            email=remark,
            expiry_time=now_ms + int(request.duration_days) * DAY_MS,
            enable=True,
            tg_id=remark,
            flow=server.vless_flow or "",
            limit_ip=int(server.limit_ip or 0),
        )

    def build_connection_uri(self, server: Any, client: ProvisionedClient) -> str:
        return build_connection_uri(server, client)

    async def test_reachability(self, server: Any) -> bool:
        try:
            await asyncio.wait_for(self.authenticate(server), timeout=self.probe_timeout)
            return True
        except asyncio.TimeoutError:
            log.warning("panel_probe_timeout server=%s timeout=%s", server.server_name, self.probe_timeout)
            return False
        except GatewayError as e:
            log.warning("panel_probe_failed server=%s reason=%s", server.server_name, e.reason)
            return False
        except Exception:
            log.exception("panel_probe_crashed server=%s", server.server_name)
            return False

    async def provision(self, server: Any, request: ProvisionRequest) -> tuple[ProvisionedClient, str]:
        """Register a client on the server and return it with its share link."""

        async def _op(token: str) -> ProvisionedClient:
            listener = await self.fetch_listener_config(server, token)
            if listener.protocol and listener.protocol != "vless":
                raise GatewayProvisionError(
                    server.server_name, f"inbound {listener.id} is {listener.protocol}, expected vless"
                )
            return await self.provision_client(server, token, request)

        try:
            client = await asyncio.wait_for(self.with_session(server, _op), timeout=self.provision_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayUnavailableError(server.server_name, f"timed out after {self.provision_timeout}s") from e
        return client, self.build_connection_uri(server, client)


class XuiGatewayClient(GatewayClient):
    """3x-ui panel over HTTP."""

    def __init__(self, *, panel_secret: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._panel_secret = panel_secret
        self._timeout = aiohttp.ClientTimeout(total=self.provision_timeout)

    @staticmethod
    def _base(server: Any) -> str:
        return str(server.xui_api_url).rstrip("/")

    async def _login(self, server: Any) -> str:
        url = f"{self._base(server)}/login"
        form = {
            "username": server.xui_username,
            "password": decrypt_panel_password(server.xui_password, self._panel_secret),
        }
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(url, data=form) as resp:
                    body = await resp.text()
                    reply = parse_panel_reply(resp.status, body)
                    cookie = _session_cookie(resp)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayUnavailableError(server.server_name, f"login request failed: {e!r}") from e

        if reply.status < 200 or reply.status >= 300:
            raise GatewayAuthError(server.server_name, f"login failed: HTTP {reply.status}")
        if reply.kind is PanelReplyKind.REJECTED:
            raise GatewayAuthError(server.server_name, f"login rejected: {reply.message or 'bad credentials'}")
        if not cookie:
            raise GatewayAuthError(server.server_name, "no session cookie received from panel")
        return cookie

    async def _request(self, server: Any, method: str, path: str, token: str, **kwargs: Any) -> PanelReply:
        url = f"{self._base(server)}{path}"
        headers = {"Cookie": token, "Accept": "application/json"}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(method, url, headers=headers, **kwargs) as resp:
                    return parse_panel_reply(resp.status, await resp.text())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayUnavailableError(server.server_name, f"{method} {path} failed: {e!r}") from e

    async def fetch_listener_config(self, server: Any, token: str) -> ListenerConfig:
        reply = await self._request(server, "GET", f"/panel/api/inbounds/get/{server.inbound_id}", token)
        if reply.kind is PanelReplyKind.AUTH_FAILURE:
            raise GatewayAuthError(server.server_name, "session rejected while reading inbound")
        if not reply.ok:
            raise GatewayUnavailableError(
                server.server_name, f"get inbound {server.inbound_id} failed: {reply.message or reply.kind.value}"
            )
        listener = ListenerConfig.from_panel_obj(reply.obj)
        if listener is None:
            raise GatewayUnavailableError(server.server_name, f"inbound {server.inbound_id} has unexpected shape")
        return listener

    async def provision_client(self, server: Any, token: str, request: ProvisionRequest) -> ProvisionedClient:
        client = self.new_client(server, request)
        payload = {
            "id": int(server.inbound_id),
            "settings": json.dumps({"clients": [client.to_panel_dict()]}),
        }
        reply = await self._request(server, "POST", "/panel/api/inbounds/addClient", token, json=payload)
        if reply.kind is PanelReplyKind.AUTH_FAILURE:
            raise GatewayAuthError(server.server_name, "session rejected while adding client")
        if not reply.ok:
            reason = reply.message or (f"HTTP {reply.status}" if reply.status >= 300 else reply.kind.value)
            raise GatewayProvisionError(server.server_name, f"add client failed: {reason}", raw=reply.raw)
        log.info("panel_client_added server=%s email=%s", server.server_name, client.email)
        return client


def _session_cookie(resp: aiohttp.ClientResponse) -> str | None:
    for name, morsel in resp.cookies.items():
        if morsel.value:
            return f"{name}={morsel.value}"
    return None


def build_gateway_client(settings: Any, *, session_cache: SessionCache | None = None) -> GatewayClient:
    """Pick the panel implementation once, from configuration."""
    cache = session_cache or SessionCache(ttl_seconds=settings.panel_session_ttl_seconds)
    common = dict(
        session_cache=cache,
        probe_timeout=settings.panel_probe_timeout_seconds,
        provision_timeout=settings.panel_provision_timeout_seconds,
    )
    mode = (settings.gateway_mode or "xui").lower()
    if mode == "xui":
        return XuiGatewayClient(panel_secret=settings.panel_secret_key, **common)
    if mode == "fake":
        from app.services.gateway.fake import FakeGatewayClient

        log.warning("gateway_mode_fake panels are simulated in memory")
        return FakeGatewayClient(**common)
    raise RuntimeError(f"Unsupported GATEWAY_MODE: {settings.gateway_mode}")
