from __future__ import annotations

from typing import Any
from urllib.parse import quote

# same unreserved set as JavaScript's encodeURIComponent, which the VPN
# client apps expect in share links
_COMPONENT_SAFE = "-_.!~*'()"


def encode_component(value: Any) -> str:
    return quote("" if value is None else str(value), safe=_COMPONENT_SAFE)


def _s(value: Any) -> str:
    return "" if value is None else str(value)


def build_connection_uri(server: Any, client: Any) -> str:
    """vless:// share link for one client on one server.

    Parameters come straight from the server row; missing ones serialize as
    empty strings so the output depends only on the inputs.
    """
    port = server.server_port or server.vless_port or 443
    label = f"{_s(server.country)}-{_s(server.server_name)}"
    return (
        f"vless://{client.id}@{server.server_ip}:{port}"
        f"?type={_s(server.vless_type)}"
        f"&security={_s(server.vless_security)}"
        f"&pbk={_s(server.vless_public_key)}"
        f"&fp={_s(server.vless_fp)}"
        f"&sni={_s(server.vless_sni)}"
        f"&sid={_s(server.vless_sid)}"
        f"&spx={encode_component(server.vless_spx)}"
        f"&flow={_s(server.vless_flow)}"
        f"#{encode_component(label)}"
    )
