from types import SimpleNamespace

from app.services.gateway.panel import ProvisionedClient
from app.services.gateway.uri import build_connection_uri


def _server(**overrides):
    values = dict(
        server_name="Amsterdam",
        server_ip="203.0.113.7",
        country="NL",
        server_port=8443,
        vless_port=443,
        vless_type="tcp",
        vless_security="reality",
        vless_public_key="PbK123",
        vless_fp="chrome",
        vless_sni="www.google.com",
        vless_sid="ab12",
        vless_spx="/",
        vless_flow="xtls-rprx-vision",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _client():
    return ProvisionedClient(id="0f8fad5b-d9cb-469f-a165-70867728950e", email="trial_42_1", expiry_time=1)


def test_uri_layout():
    uri = build_connection_uri(_server(), _client())

    assert uri == (
        "vless://0f8fad5b-d9cb-469f-a165-70867728950e@203.0.113.7:8443"
        "?type=tcp&security=reality&pbk=PbK123&fp=chrome&sni=www.google.com"
        "&sid=ab12&spx=%2F&flow=xtls-rprx-vision#NL-Amsterdam"
    )


def test_uri_is_deterministic():
    server, client = _server(), _client()

    assert build_connection_uri(server, client) == build_connection_uri(server, client)


def test_missing_parameters_serialize_as_empty():
    uri = build_connection_uri(
        _server(server_port=None, vless_public_key=None, vless_sid=None, vless_flow=None, vless_spx=None),
        _client(),
    )

    assert "@203.0.113.7:443?" in uri
    assert "&pbk=&" in uri
    assert "&sid=&spx=&flow=#" in uri


def test_label_is_percent_encoded():
    uri = build_connection_uri(_server(country="DE", server_name="Frankfurt #2"), _client())

    assert uri.endswith("#DE-Frankfurt%20%232")
