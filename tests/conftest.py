import io
import logging
import threading
import urllib.error
import urllib.request

import pytest
from etcd3gw.exceptions import ConnectionFailedError

from prohtds.discovery import make_discovery_server


class FakeLease:
    def __init__(self, lease_id, ttl, client):
        self.id = lease_id
        self.granted_ttl = ttl
        self.client = client
        self.refreshes = 0
        self.expired = False

    def refresh(self):
        self.client.refresh_calls += 1
        if self.client.refresh_errors:
            raise self.client.refresh_errors.pop(0)
        if self.expired:
            return 0
        self.refreshes += 1
        return self.granted_ttl


class FakeEtcdClient:
    """Just enough of etcd3gw.client.Etcd3Client for prohtds."""

    def __init__(self):
        self.kvs = {}
        self.leases = []
        self.refresh_calls = 0
        self.refresh_errors = []
        self.down = False
        self.status_calls = 0

    def _check(self):
        if self.down:
            raise ConnectionFailedError("connection refused")

    def status(self):
        self.status_calls += 1
        self._check()
        return {"version": "3.5.0"}

    def lease(self, ttl=30):
        self._check()
        lease = FakeLease(len(self.leases) + 1, ttl, self)
        self.leases.append(lease)
        return lease

    def put(self, key, value, lease=None):
        self._check()
        if isinstance(value, str):
            value = value.encode()
        self.kvs[key] = (value, lease)
        return True

    def get_prefix(self, key_prefix, sort_order=None, sort_target=None):
        self._check()
        return [
            (value, {"key": key.encode(), "lease": lease.id if lease else 0})
            for key, (value, lease) in sorted(self.kvs.items())
            if key.startswith(key_prefix)
        ]


@pytest.fixture
def etcd():
    return FakeEtcdClient()


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def logger(log_stream):
    log = logging.getLogger("prohtds.test")
    log.handlers.clear()
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)
    log.propagate = False
    return log


@pytest.fixture
def discovery_server(etcd, logger):
    """A discovery server on a free port, serving in a background thread."""
    server = make_discovery_server(etcd, host="127.0.0.1", port=0, logger=logger)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def http_get(server, path, method="GET"):
    """Request *path* from *server*; returns (status, content_type, body)."""
    host, port = server.server_address[:2]
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    request = urllib.request.Request(f"http://{host}:{port}{path}", method=method)
    try:
        with opener.open(request, timeout=10) as resp:
            return resp.status, resp.headers.get("Content-Type"), resp.read().decode()
    except urllib.error.HTTPError as e:
        return e.code, e.headers.get("Content-Type"), e.read().decode()
