from __future__ import annotations

import itertools
import logging
from collections import Counter
from typing import Any

from app.services.errors import GatewayAuthError, GatewayProvisionError, GatewayUnavailableError
from app.services.gateway.client import GatewayClient
from app.services.gateway.panel import ListenerConfig, ProvisionedClient, ProvisionRequest

log = logging.getLogger(__name__)


class FakeGatewayClient(GatewayClient):
    """In-memory panels for local runs and tests.

    Servers are matched by ``server_name``. ``unreachable`` servers refuse to
    log in, ``failing`` ones log in but reject new clients.
    """

    def __init__(
        self,
        *,
        unreachable: set[str] | None = None,
        failing: set[str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.unreachable: set[str] = set(unreachable or ())
        self.failing: set[str] = set(failing or ())
        self.clients: dict[str, list[ProvisionedClient]] = {}
        self.login_calls: Counter[str] = Counter()
        self.provision_calls: Counter[str] = Counter()
        self._valid_tokens: set[str] = set()
        self._seq = itertools.count(1)

    def expire_sessions(self) -> None:
        """Drop every panel-side session; cached tokens become stale."""
        self._valid_tokens.clear()

    def _check(self, server: Any, token: str) -> None:
        if server.server_name in self.unreachable:
            raise GatewayUnavailableError(server.server_name, "connection refused")
        if token not in self._valid_tokens:
            raise GatewayAuthError(server.server_name, "session expired")

    async def _login(self, server: Any) -> str:
        self.login_calls[server.server_name] += 1
        if server.server_name in self.unreachable:
            raise GatewayUnavailableError(server.server_name, "connection refused")
        token = f"3x-ui=fake-{server.server_name}-{next(self._seq)}"
        self._valid_tokens.add(token)
        return token

    async def fetch_listener_config(self, server: Any, token: str) -> ListenerConfig:
        self._check(server, token)
        existing = tuple(c.id for c in self.clients.get(server.server_name, []))
        return ListenerConfig(
            id=int(server.inbound_id or 1),
            protocol="vless",
            port=int(server.server_port or server.vless_port or 443),
            client_ids=existing,
        )

    async def provision_client(self, server: Any, token: str, request: ProvisionRequest) -> ProvisionedClient:
        self._check(server, token)
        self.provision_calls[server.server_name] += 1
        if server.server_name in self.failing:
            raise GatewayProvisionError(server.server_name, "add client failed: panel rejected client", raw="{}")
        client = self.new_client(server, request)
        self.clients.setdefault(server.server_name, []).append(client)
        log.info("fake_panel_client_added server=%s email=%s", server.server_name, client.email)
        return client
