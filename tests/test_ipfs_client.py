"""
Tests for the IPFS daemon client using httpx's mock transport.
"""

import httpx
import pytest

from depin_storage.core.errors import DaemonUnavailable
from depin_storage.sdk.ipfs_client import IpfsDaemon


def daemon_with(handler) -> IpfsDaemon:
    return IpfsDaemon("http://ipfs.local:5001/", client=httpx.Client(transport=httpx.MockTransport(handler)))


def healthy_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/v0/id":
        return httpx.Response(200, json={"ID": "12D3KooWNode"})
    if request.url.path == "/api/v0/swarm/peers":
        return httpx.Response(200, json={"Peers": [{"Peer": "a"}, {"Peer": "b"}]})
    return httpx.Response(404)


class TestIpfsDaemon:
    """Test daemon RPC calls and failure mapping."""

    def test_node_id(self):
        assert daemon_with(healthy_handler).node_id() == "12D3KooWNode"

    def test_requests_use_post(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            return healthy_handler(request)

        daemon_with(handler).node_id()
        assert methods == ["POST"]

    def test_peer_count_and_probe(self):
        daemon = daemon_with(healthy_handler)
        assert daemon.peer_count() == 2
        assert daemon.probe() is True

    def test_no_peers_fails_probe(self):
        daemon = daemon_with(lambda request: httpx.Response(200, json={"Peers": None}))
        assert daemon.peer_count() == 0
        assert daemon.probe() is False

    def test_null_body(self):
        daemon = daemon_with(lambda request: httpx.Response(200, content=b"null"))
        with pytest.raises(DaemonUnavailable, match="unexpected body"):
            daemon.probe()
        with pytest.raises(DaemonUnavailable, match="unexpected body"):
            daemon.node_id()

    def test_list_body(self):
        daemon = daemon_with(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(DaemonUnavailable, match="unexpected body"):
            daemon.peer_count()

    def test_malformed_peer_list(self):
        daemon = daemon_with(lambda request: httpx.Response(200, json={"Peers": "a,b"}))
        with pytest.raises(DaemonUnavailable, match="malformed peer list"):
            daemon.probe()

    def test_empty_node_id(self):
        daemon = daemon_with(lambda request: httpx.Response(200, json={"ID": ""}))
        with pytest.raises(DaemonUnavailable, match="no node ID"):
            daemon.node_id()

    def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DaemonUnavailable):
            daemon_with(handler).probe()

    def test_http_error_status(self):
        daemon = daemon_with(lambda request: httpx.Response(500, text="internal error"))
        with pytest.raises(DaemonUnavailable):
            daemon.node_id()

    def test_invalid_json(self):
        daemon = daemon_with(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(DaemonUnavailable, match="invalid JSON"):
            daemon.peer_count()

    def test_empty_url_rejected(self):
        with pytest.raises(ValueError, match="api_url is required"):
            IpfsDaemon("")
