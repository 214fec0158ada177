from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PanelReplyKind(Enum):
    OK = "ok"
    AUTH_FAILURE = "auth_failure"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"  # panel answered success=false
    UNEXPECTED_SHAPE = "unexpected_shape"


@dataclass(frozen=True)
class PanelReply:
    """A 3x-ui response reduced to what callers may rely on."""

    kind: PanelReplyKind
    status: int
    obj: Any = None
    message: str = ""
    raw: str = ""

    @property
    def ok(self) -> bool:
        return self.kind is PanelReplyKind.OK


def parse_panel_reply(status: int, body: str) -> PanelReply:
    """Classify an HTTP status + body from the panel.

    3x-ui wraps everything in ``{"success": bool, "msg": str, "obj": ...}``
    and answers an expired session with 401/403 or a redirect to the login
    page (HTML instead of JSON).
    """
    raw = body or ""
    if status in (401, 403):
        return PanelReply(PanelReplyKind.AUTH_FAILURE, status, raw=raw)
    if status == 404:
        return PanelReply(PanelReplyKind.NOT_FOUND, status, raw=raw)
    if status < 200 or status >= 300:
        return PanelReply(PanelReplyKind.UNEXPECTED_SHAPE, status, message=f"HTTP {status}", raw=raw)

    try:
        data = json.loads(raw) if raw.strip() else None
    except ValueError:
        data = None

    if not isinstance(data, dict) or "success" not in data:
        if raw.lstrip().lower().startswith("<!doctype html") or "<html" in raw[:200].lower():
            return PanelReply(PanelReplyKind.AUTH_FAILURE, status, message="login page returned", raw=raw)
        return PanelReply(PanelReplyKind.UNEXPECTED_SHAPE, status, message="not a panel reply", raw=raw)

    message = str(data.get("msg") or "")
    if data.get("success") is not True:
        return PanelReply(PanelReplyKind.REJECTED, status, obj=data.get("obj"), message=message, raw=raw)
    return PanelReply(PanelReplyKind.OK, status, obj=data.get("obj"), message=message, raw=raw)


@dataclass(frozen=True)
class ListenerConfig:
    """The panel inbound a server's clients are registered under."""

    id: int
    protocol: str
    port: int
    remark: str = ""
    enable: bool = True
    client_ids: tuple[str, ...] = ()

    @classmethod
    def from_panel_obj(cls, obj: Any) -> "ListenerConfig | None":
        if not isinstance(obj, dict):
            return None
        try:
            inbound_id = int(obj["id"])
            port = int(obj.get("port") or 0)
        except (KeyError, TypeError, ValueError):
            return None

        settings = obj.get("settings")
        if isinstance(settings, str):
            try:
                settings = json.loads(settings) if settings.strip() else {}
            except ValueError:
                return None
        clients = (settings or {}).get("clients") if isinstance(settings, dict) else None
        client_ids = tuple(
            str(c.get("id") or "") for c in (clients or []) if isinstance(c, dict)
        )
        return cls(
            id=inbound_id,
            protocol=str(obj.get("protocol") or "").lower(),
            port=port,
            remark=str(obj.get("remark") or ""),
            enable=bool(obj.get("enable", True)),
            client_ids=client_ids,
        )


@dataclass(frozen=True)
class ProvisionRequest:
    external_user_id: int
    plan_kind: str
    duration_days: int


@dataclass(frozen=True)
class ProvisionedClient:
    """A client entry as submitted to one panel; the panel is its only storage."""

    id: str
    email: str
    expiry_time: int  # epoch milliseconds
    enable: bool = True
    tg_id: str = ""
    flow: str = ""
    limit_ip: int = 0
    total_gb: int = 0
    sub_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_panel_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "limitIp": self.limit_ip,
            "totalGB": self.total_gb,
            "expiryTime": self.expiry_time,
            "enable": self.enable,
            "tgId": self.tg_id,
            "subId": self.sub_id,
            "flow": self.flow,
            "reset": 0,
            **self.extra,
        }
