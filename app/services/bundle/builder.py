from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

import qrcode

from app.core.time import utcnow
from app.services.errors import EmptyBundleError
from app.services.gateway.uri import encode_component

_USER_AGENTS = {"v2raytun": "V2rayTun"}


@dataclass(frozen=True)
class SubscriptionBundle:
    uris: tuple[str, ...]
    content: str  # base64 of the UTF-8 text block
    direct: str
    import_deep_link: str
    qr: str

    @property
    def servers_count(self) -> int:
        return len(self.uris)

    def decoded(self) -> str:
        return base64.b64decode(self.content).decode("utf-8")


def uris_from_content(text: str) -> list[str]:
    """URI lines of a decoded bundle, provenance comments dropped."""
    return [line for line in text.split("\n") if line and not line.startswith("#")]


class BundleBuilder:
    def __init__(
        self,
        *,
        base_url: str = "https://vpntest.digital",
        import_scheme: str = "v2raytun",
        title: str = "GramVPN Subscription",
        with_header: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.import_scheme = import_scheme
        self.title = title
        self.with_header = with_header

    @classmethod
    def from_settings(cls, s) -> "BundleBuilder":
        return cls(
            base_url=s.subscription_base_url,
            import_scheme=s.subscription_import_scheme,
            title=s.subscription_title,
            with_header=s.subscription_headers,
        )

    def header_lines(self, total: int, generated_at: datetime | None = None) -> list[str]:
        generated_at = generated_at or utcnow()
        return [
            f"# {self.title}",
            f"# Generated: {generated_at.isoformat()}",
            f"# User-Agent: {_USER_AGENTS.get(self.import_scheme, self.import_scheme)}",
            f"# Total Servers: {total}",
            "",
        ]

    def direct_link(self, external_user_id: int, expiry_epoch_seconds: int) -> str:
        return (
            f"{self.base_url}/subscription/{external_user_id}"
            f"?expire={int(expiry_epoch_seconds)}&type={self.import_scheme}"
        )

    def build(
        self,
        uris: Sequence[str],
        external_user_id: int,
        expiry_epoch_seconds: int,
        *,
        with_header: bool | None = None,
        generated_at: datetime | None = None,
    ) -> SubscriptionBundle:
        if not uris:
            raise EmptyBundleError(f"no connection uris for user {external_user_id}")

        with_header = self.with_header if with_header is None else with_header
        lines = self.header_lines(len(uris), generated_at) if with_header else []
        lines.extend(uris)
        text = "\n".join(lines)

        direct = self.direct_link(external_user_id, expiry_epoch_seconds)
        return SubscriptionBundle(
            uris=tuple(uris),
            content=base64.b64encode(text.encode("utf-8")).decode("ascii"),
            direct=direct,
            import_deep_link=f"{self.import_scheme}://import/{encode_component(direct)}",
            qr=f"{self.base_url}/qr/{external_user_id}?expire={int(expiry_epoch_seconds)}",
        )


def qr_png(data: str) -> bytes:
    img = qrcode.make(data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
