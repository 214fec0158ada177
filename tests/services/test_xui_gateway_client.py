import asyncio
import json
import re
import time
from types import SimpleNamespace

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from app.services.errors import GatewayAuthError, GatewayProvisionError
from app.services.gateway.client import XuiGatewayClient
from app.services.gateway.panel import ProvisionRequest
from app.services.gateway.secrets import encrypt_panel_password
from app.services.gateway.session_cache import SessionCache

DAY_MS = 86_400_000


class FakePanel:
    """Just enough of the 3x-ui HTTP API."""

    def __init__(self) -> None:
        self.url = ""
        self.logins = 0
        self.sessions: set[str] = set()
        self.clients: list[dict] = []
        self.add_payloads: list[dict] = []
        self.reject_add = False
        self.login_delay = 0.0

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/login", self.login)
        app.router.add_get("/panel/api/inbounds/get/{inbound_id}", self.get_inbound)
        app.router.add_post("/panel/api/inbounds/addClient", self.add_client)
        return app

    def _authed(self, request: web.Request) -> bool:
        return request.cookies.get("3x-ui") in self.sessions

    async def login(self, request: web.Request) -> web.Response:
        if self.login_delay:
            await asyncio.sleep(self.login_delay)
        form = await request.post()
        if form.get("username") != "admin" or form.get("password") != "secret":
            return web.json_response({"success": False, "msg": "Wrong username or password"})
        self.logins += 1
        token = f"s{self.logins}"
        self.sessions.add(token)
        resp = web.json_response({"success": True, "msg": "Login Successfully"})
        resp.set_cookie("3x-ui", token)
        return resp

    async def get_inbound(self, request: web.Request) -> web.Response:
        if not self._authed(request):
            return web.Response(status=401)
        inbound_id = int(request.match_info["inbound_id"])
        return web.json_response(
            {
                "success": True,
                "msg": "",
                "obj": {
                    "id": inbound_id,
                    "protocol": "vless",
                    "port": 443,
                    "remark": "reality",
                    "enable": True,
                    "settings": json.dumps({"clients": self.clients}),
                },
            }
        )

    async def add_client(self, request: web.Request) -> web.Response:
        if not self._authed(request):
            return web.Response(status=401)
        body = await request.json()
        self.add_payloads.append(body)
        if self.reject_add:
            return web.json_response({"success": False, "msg": "Duplicate email: trial_42"})
        self.clients.extend(json.loads(body["settings"])["clients"])
        return web.json_response({"success": True, "msg": "Client(s) added Successfully"})


@pytest.fixture
async def panel():
    fake = FakePanel()
    server = TestServer(fake.app())
    await server.start_server()
    fake.url = str(server.make_url("")).rstrip("/")
    yield fake
    await server.close()


def _server(url: str, **overrides):
    values = dict(
        server_name="nl-1",
        server_ip="203.0.113.7",
        country="NL",
        xui_api_url=url,
        xui_username="admin",
        xui_password="secret",
        inbound_id=3,
        server_port=443,
        vless_port=443,
        vless_type="tcp",
        vless_security="reality",
        vless_public_key="pbk",
        vless_fp="chrome",
        vless_sni="www.google.com",
        vless_sid="ab12",
        vless_spx="/",
        vless_flow="xtls-rprx-vision",
        limit_ip=0,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _client(**kwargs) -> XuiGatewayClient:
    kwargs.setdefault("session_cache", SessionCache(ttl_seconds=1800))
    kwargs.setdefault("probe_timeout", 1)
    kwargs.setdefault("provision_timeout", 5)
    return XuiGatewayClient(**kwargs)


async def test_authenticate_returns_cookie_and_caches_it(panel):
    gw = _client()
    server = _server(panel.url)

    token = await gw.authenticate(server)

    assert token == "3x-ui=s1"
    assert gw.session_cache.get(("203.0.113.7", "admin")) == "3x-ui=s1"


async def test_wrong_credentials_raise_auth_error(panel):
    gw = _client()

    with pytest.raises(GatewayAuthError):
        await gw.authenticate(_server(panel.url, xui_password="nope"))
    assert len(gw.session_cache) == 0


async def test_encrypted_panel_password_is_decrypted_for_login(panel):
    gw = _client(panel_secret="panel-secret")
    server = _server(panel.url, xui_password=encrypt_panel_password("secret", "panel-secret"))

    assert await gw.authenticate(server) == "3x-ui=s1"


async def test_two_provisions_within_ttl_log_in_once(panel):
    gw = _client()
    server = _server(panel.url)
    request = ProvisionRequest(external_user_id=42, plan_kind="30days", duration_days=30)

    first, uri1 = await gw.provision(server, request)
    second, uri2 = await gw.provision(server, request)

    assert panel.logins == 1
    assert [c["id"] for c in panel.clients] == [first.id, second.id]
    assert uri1.startswith(f"vless://{first.id}@203.0.113.7:443?")
    assert uri2.startswith(f"vless://{second.id}@203.0.113.7:443?")


async def test_add_client_payload(panel):
    gw = _client()
    before_ms = int(time.time() * 1000)

    client, _ = await gw.provision(_server(panel.url), ProvisionRequest(42, "30days", 30))

    payload = panel.add_payloads[0]
    assert payload["id"] == 3
    sent = json.loads(payload["settings"])["clients"][0]
    assert sent["id"] == client.id
    assert re.fullmatch(r"30days_42_\d{13}", sent["email"])
    assert sent["tgId"] == sent["email"]
    assert sent["enable"] is True
    assert sent["flow"] == "xtls-rprx-vision"
    assert before_ms + 30 * DAY_MS <= sent["expiryTime"] <= int(time.time() * 1000) + 30 * DAY_MS


async def test_expired_panel_session_triggers_one_relogin(panel):
    gw = _client()
    server = _server(panel.url)
    await gw.provision(server, ProvisionRequest(42, "trial", 3))

    panel.sessions.clear()  # panel restarted
    client, _ = await gw.provision(server, ProvisionRequest(43, "trial", 3))

    assert panel.logins == 2
    assert panel.clients[-1]["id"] == client.id
    assert gw.session_cache.get(("203.0.113.7", "admin")) == "3x-ui=s2"


async def test_rejected_add_client_carries_panel_text(panel):
    gw = _client()
    panel.reject_add = True

    with pytest.raises(GatewayProvisionError) as exc:
        await gw.provision(_server(panel.url), ProvisionRequest(42, "trial", 3))

    assert "Duplicate email" in exc.value.reason
    assert "Duplicate email" in exc.value.raw


async def test_reachability_false_instead_of_raising(panel):
    gw = _client()

    assert await gw.test_reachability(_server(panel.url)) is True
    assert await gw.test_reachability(_server(panel.url, xui_password="nope")) is False
    assert await gw.test_reachability(_server("http://127.0.0.1:1", server_ip="198.51.100.1")) is False


async def test_reachability_is_bounded_by_probe_timeout(panel):
    gw = _client(probe_timeout=0.2)
    panel.login_delay = 2

    started = time.monotonic()
    assert await gw.test_reachability(_server(panel.url)) is False
    assert time.monotonic() - started < 1.5
