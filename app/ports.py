"""Host port allocation from per-tier port pools."""

import logging
import socket
from typing import Optional

from app.errors import RunFailed
from app.tiers import PortPool

logger = logging.getLogger(__name__)


def _port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hands out host ports from a tier's pool and remembers who holds them.

    Ports are hard-scoped to the pool: a build never falls back to a port
    outside its owner's tier range. The claim table is what keeps two
    concurrent builds from being handed the same port, since a port that is
    claimed but not yet bound still probes as free.
    """

    def __init__(self, probe=_port_is_free):
        self._probe = probe
        self._claims: dict[str, int] = {}

    def allocate(self, pool: PortPool, owner: str) -> int:
        """Claim a free port in `pool` for `owner`.

        An owner that already holds a port inside the pool gets it back without
        probing: it is still bound by the owner's previous container, which is
        removed before the new one starts.
        """
        current = self._claims.get(owner)
        if current is not None and current in pool:
            return current
        if current is not None:
            self.release(owner)

        taken = set(self._claims.values())
        for port in pool.ports():
            if port in taken:
                continue
            if not self._probe(port):
                continue
            self._claims[owner] = port
            logger.info(f"Allocated port {port} to {owner}")
            return port

        raise RunFailed(f"No free host port in range {pool.min}-{pool.max}")

    def claim(self, owner: str, port: int):
        """Record a port that is already bound (e.g. a live preview found at startup)."""
        self._claims[owner] = port

    def release(self, owner: str) -> Optional[int]:
        port = self._claims.pop(owner, None)
        if port is not None:
            logger.info(f"Released port {port} from {owner}")
        return port

    def owner_of(self, port: int) -> Optional[str]:
        for owner, claimed in self._claims.items():
            if claimed == port:
                return owner
        return None
