"""
Content-network daemon client.

Talks to the local IPFS daemon over its HTTP RPC API. Every failure,
transport or HTTP, surfaces as DaemonUnavailable.
"""

from typing import Any, Dict, Optional

import httpx

from ..core.errors import DaemonUnavailable


class IpfsDaemon:
    """Minimal IPFS RPC wrapper used for provider liveness probes."""

    def __init__(
        self,
        api_url: str = "http://127.0.0.1:5001",
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None
    ):
        """Initialize the daemon client.

        Args:
            api_url: Base URL of the daemon's RPC API
            timeout: Per-request timeout in seconds
            client: Preconfigured httpx client (tests inject a mock transport)
        """
        if not api_url or not api_url.strip():
            raise ValueError("api_url is required and cannot be empty")
        self.api_url = api_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def _rpc(self, command: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        url = f"{self.api_url}/api/v0/{command}"
        try:
            response = self.client.post(url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise DaemonUnavailable(f"IPFS daemon call '{command}' failed: {e}") from e
        except ValueError as e:
            raise DaemonUnavailable(f"IPFS daemon returned invalid JSON for '{command}'") from e
        if not isinstance(payload, dict):
            raise DaemonUnavailable(f"IPFS daemon returned an unexpected body for '{command}'")
        return payload

    def node_id(self) -> str:
        """Return the daemon's peer identity."""
        payload = self._rpc("id")
        node_id = str(payload.get("ID") or "").strip()
        if not node_id:
            raise DaemonUnavailable("IPFS daemon reported no node ID")
        return node_id

    def peer_count(self) -> int:
        """Number of currently connected swarm peers."""
        peers = self._rpc("swarm/peers").get("Peers") or []
        if not isinstance(peers, list):
            raise DaemonUnavailable("IPFS daemon returned a malformed peer list")
        return len(peers)

    def probe(self) -> bool:
        """Liveness probe: the daemon answers and has at least one peer."""
        return self.peer_count() > 0

    def close(self) -> None:
        self.client.close()
