"""Lease-backed registration: keeps this process's presence key alive in etcd."""

import logging
import threading
import urllib.parse
from dataclasses import dataclass
from typing import Optional

import etcd3gw
from etcd3gw.exceptions import Etcd3Exception

from .discovery import ServiceDef, describe_store_error
from .errors import LeaseRenewalError, StoreConnectionError


DEFAULT_ETCD_PORT = 2379


@dataclass
class Presence:
    """A registration key and the value attached to the agent's lease."""
    key: str
    service: ServiceDef


def parse_endpoint(endpoint: str) -> tuple[str, str, int]:
    """Split ``[http[s]://]host[:port]`` into ``(protocol, host, port)``."""
    if "://" not in endpoint:
        endpoint = f"http://{endpoint}"
    parts = urllib.parse.urlsplit(endpoint)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"invalid etcd endpoint {endpoint!r}")
    return parts.scheme, parts.hostname, parts.port or DEFAULT_ETCD_PORT


def connect(endpoints: list[str], timeout: float, logger: logging.Logger):
    """Return a client for the first endpoint that answers a status call."""
    errors = []
    for endpoint in endpoints:
        try:
            protocol, host, port = parse_endpoint(endpoint)
        except ValueError as e:
            errors.append(str(e))
            continue
        client = etcd3gw.client(host=host, port=port, protocol=protocol, timeout=timeout)
        try:
            client.status()
        except Etcd3Exception as e:
            msg = describe_store_error(e)
            logger.warning("etcd endpoint %s unreachable: %s", endpoint, msg)
            errors.append(f"{endpoint}: {msg}")
            continue
        logger.info("connected to etcd at %s", endpoint)
        return client

    if not endpoints:
        raise StoreConnectionError("no etcd endpoints configured")
    raise StoreConnectionError(
        f"no etcd endpoint reachable within {timeout}s ({'; '.join(errors)})"
    )


class EtcdAgent:
    """Owns the etcd connection and a lease, and renews the lease until stopped."""

    def __init__(self, client, presence: Optional[Presence] = None,
                 logger: Optional[logging.Logger] = None,
                 lease_ttl: int = 10, renew_interval: float = 3.0,
                 max_failures: int = 3):
        self.client = client
        self.presence = presence
        self.logger = logger or logging.getLogger(__name__)
        self.lease_ttl = lease_ttl
        self.renew_interval = renew_interval
        self.max_failures = max_failures
        self.lease = None

    @classmethod
    def start(cls, endpoints: list[str], presence: Optional[Presence] = None,
              logger: Optional[logging.Logger] = None, lease_ttl: int = 10,
              renew_interval: float = 3.0, max_failures: int = 3,
              connect_timeout: float = 5.0) -> 'EtcdAgent':
        """Connect, grant the lease and write the presence key."""
        log = logger or logging.getLogger(__name__)
        client = connect(endpoints, connect_timeout, log)
        agent = cls(client, presence, log, lease_ttl, renew_interval, max_failures)
        try:
            agent.register()
        except Etcd3Exception as e:
            raise StoreConnectionError(
                f"cannot set up lease: {describe_store_error(e)}"
            ) from e
        return agent

    def register(self) -> None:
        """Grant a fresh lease and attach the presence key to it."""
        self.lease = self.client.lease(ttl=self.lease_ttl)
        if self.presence is not None:
            self.client.put(self.presence.key, self.presence.service.to_json(), lease=self.lease)
            self.logger.info(
                "registered %s with lease %x (ttl %ds)",
                self.presence.key, self.lease.id, self.lease_ttl,
            )
        else:
            self.logger.info("granted lease %x (ttl %ds)", self.lease.id, self.lease_ttl)

    def renew(self) -> None:
        """Refresh the lease once, registering again if etcd already expired it."""
        try:
            ttl = self.lease.refresh()
        except KeyError:
            # keepalive response without a TTL: the lease no longer exists
            ttl = 0
        if ttl <= 0:
            self.logger.warning("lease %x expired, registering again", self.lease.id)
            self.register()

    def run(self, stop: threading.Event) -> None:
        """Renew every renew_interval seconds until *stop* is set.

        Raises LeaseRenewalError after max_failures consecutive failures.
        """
        failures = 0
        while not stop.wait(self.renew_interval):
            try:
                self.renew()
            except Etcd3Exception as e:
                failures += 1
                msg = describe_store_error(e)
                self.logger.warning(
                    "lease renewal failed (%d/%d): %s", failures, self.max_failures, msg,
                )
                if failures >= self.max_failures:
                    raise LeaseRenewalError(failures, msg) from e
                continue

            if failures:
                self.logger.info("lease renewal recovered after %d failure(s)", failures)
            failures = 0
        self.logger.info("keepalive stopped")
