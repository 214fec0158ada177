from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from app.services.gateway.client import GatewayClient

log = logging.getLogger(__name__)


class FleetProber:
    """Checks every panel concurrently and keeps the ones that answer."""

    def __init__(self, gateway: GatewayClient):
        self.gateway = gateway

    async def probe(self, servers: Sequence[Any]) -> list[Any]:
        servers = list(servers)
        if not servers:
            return []
        # test_reachability never raises, so plain gather is a full barrier
        results = await asyncio.gather(*(self.gateway.test_reachability(s) for s in servers))
        reachable = [s for s, ok in zip(servers, results) if ok]
        log.info("fleet_probe_done total=%s reachable=%s", len(servers), len(reachable))
        return reachable
