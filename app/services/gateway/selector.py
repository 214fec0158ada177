from __future__ import annotations

from typing import Any, Sequence

from app.services.errors import NoServersAvailableError


def pick_optimal(servers: Sequence[Any]) -> Any:
    """Least loaded server; the first one wins a tie."""
    if not servers:
        raise NoServersAvailableError("no servers to choose from")
    best = servers[0]
    for server in servers[1:]:
        if int(server.active_subscribers or 0) < int(best.active_subscribers or 0):
            best = server
    return best


def pick_all_reachable(servers: Sequence[Any]) -> list[Any]:
    return list(servers)
