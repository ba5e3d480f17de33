#!/usr/bin/env python3
"""
etcd-backed Prometheus HTTP Service Discovery

This module provides:
- ServiceKey / ServiceDef: parsers for the registration keys and values in etcd
- TargetGroup: one entry of the Prometheus HTTP SD document
- list_target_groups: reads the namespace and builds the discovery document
- DiscoveryHTTPServer: ThreadingHTTPServer serving GET /services with a
  bounded drain of in-flight requests on shutdown
"""

import json
import logging
import threading
import urllib.parse
from dataclasses import dataclass, asdict, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, NamedTuple

from etcd3gw.exceptions import Etcd3Exception

from ..errors import DiscoveryError, ListingError, MalformedKeyError, MalformedValueError


KEY_SEPARATOR = "/"
DISCOVERY_PATH = "/services"


def describe_store_error(exc: Exception) -> str:
    """Human-readable message for an etcd3gw exception.

    etcd3gw keeps the message in ``detail_text`` rather than in ``args``.
    """
    detail = getattr(exc, "detail_text", None)
    return str(detail or str(exc) or type(exc).__name__)


def _text(data) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8")
    return data


class ServiceKey(NamedTuple):
    """A registration key ``<root>/<category>/<job>/<instance>``."""
    root: str
    category: str
    job: str
    instance: str

    @classmethod
    def parse(cls, key: str) -> 'ServiceKey':
        segments = key.split(KEY_SEPARATOR)
        if len(segments) < 4:
            raise MalformedKeyError(
                key, f"expected <root>/<category>/<job>/<instance>, got {len(segments)} segment(s)"
            )
        root, category, job, instance = segments[:4]
        if not job:
            raise MalformedKeyError(key, "job segment is empty")
        if not instance:
            raise MalformedKeyError(key, "instance segment is empty")
        return cls(root, category, job, instance)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class ServiceDef:
    """The JSON value stored at a registration key."""
    service_port: int
    metrics_port: int
    metrics_url: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, key: str, raw) -> 'ServiceDef':
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedValueError(key, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedValueError(key, "expected a JSON object")

        for name in ("service_port", "metrics_port"):
            if name not in data:
                raise MalformedValueError(key, f"missing field {name!r}")
            if not _is_int(data[name]):
                raise MalformedValueError(key, f"field {name!r} must be an integer")
        if not isinstance(data.get("metrics_url"), str):
            raise MalformedValueError(key, "field 'metrics_url' must be a string")

        return cls(
            service_port=data["service_port"],
            metrics_port=data["metrics_port"],
            metrics_url=data["metrics_url"],
        )


@dataclass
class TargetGroup:
    """One Prometheus HTTP SD target group."""
    targets: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

def list_target_groups(client, prefix: str = "/",
                       logger: logging.Logger | None = None) -> List[TargetGroup]:
    """Read every registration under *prefix* and build the SD document.

    One malformed entry fails the whole listing.
    """
    log = logger or logging.getLogger(__name__)
    log.debug("listing services under %r", prefix)
    try:
        entries = client.get_prefix(prefix)
    except Etcd3Exception as e:
        raise ListingError(describe_store_error(e)) from e

    groups = []
    for raw_value, meta in entries:
        try:
            key = _text(meta["key"])
        except UnicodeDecodeError:
            raise MalformedKeyError(repr(meta["key"]), "key is not valid UTF-8") from None
        log.debug("k: %s, v: %r", key, raw_value)
        skey = ServiceKey.parse(key)
        sdef = ServiceDef.from_json(key, raw_value)
        groups.append(TargetGroup(
            targets=[f"{skey.instance}:{sdef.metrics_port}"],
            labels={"job": skey.job},
        ))
    return groups


# ---------------------------------------------------------------------------
# HTTP front door
# ---------------------------------------------------------------------------

def _make_handler(client, prefix: str, logger: logging.Logger):
    """Create a handler class bound to the given etcd client."""

    class DiscoveryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def _respond(self, status: int, body: bytes, content_type: str | None = None):
            self.send_response(status)
            if content_type:
                self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if body and self.command != "HEAD":
                self.wfile.write(body)

        # Routing ignores the method: /services answers any verb, anything else is 404
        def do_GET(self):
            self._dispatch()

        do_HEAD = do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = do_GET

        def _dispatch(self):
            path = urllib.parse.urlparse(self.path).path

            if path != DISCOVERY_PATH:
                self._respond(404, b"")
                return

            try:
                groups = list_target_groups(client, prefix=prefix, logger=logger)
            except DiscoveryError as e:
                logger.warning("discovery failed: %s", e)
                self._respond(503, str(e).encode(), "text/plain; charset=utf-8")
                return

            body = json.dumps([g.to_dict() for g in groups]).encode()
            self._respond(200, body, "application/json")

    return DiscoveryHTTPHandler


class DiscoveryHTTPServer(ThreadingHTTPServer):
    """ThreadingHTTPServer that can wait for in-flight requests after shutdown()."""

    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, handler_class):
        super().__init__(server_address, handler_class)
        self._inflight = 0
        self._inflight_cond = threading.Condition()

    def process_request(self, request, client_address):
        with self._inflight_cond:
            self._inflight += 1
        try:
            super().process_request(request, client_address)
        except BaseException:
            self._finish_request_accounting()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._finish_request_accounting()

    def _finish_request_accounting(self):
        with self._inflight_cond:
            self._inflight -= 1
            self._inflight_cond.notify_all()

    @property
    def inflight(self) -> int:
        with self._inflight_cond:
            return self._inflight

    def drain(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for in-flight requests to finish."""
        with self._inflight_cond:
            return self._inflight_cond.wait_for(lambda: self._inflight == 0, timeout)


def make_discovery_server(
    client,
    host: str = "0.0.0.0",
    port: int = 8080,
    logger: logging.Logger | None = None,
    prefix: str = "/",
) -> DiscoveryHTTPServer:
    """Bind the discovery HTTP server. The caller runs serve_forever()."""
    log = logger or logging.getLogger(__name__)
    handler = _make_handler(client, prefix, log)
    return DiscoveryHTTPServer((host, port), handler)
