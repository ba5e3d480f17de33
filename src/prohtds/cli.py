"""CLI entry point for prohtds."""

import argparse
import json
import logging
import signal
import sys
import threading

from .config import (
    PRESENCE_CATEGORY,
    ProhtdsConfig,
    config_to_yaml,
    load_config,
    merge_cli_args,
    merge_env,
    validate_config,
)
from .discovery import ServiceDef, list_target_groups, make_discovery_server
from .errors import DiscoveryError, ProhtdsError
from .keepalive import EtcdAgent, Presence, connect
from .supervisor import run_supervisor


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_logger(level: str = "INFO", stream=None) -> logging.Logger:
    """Build the prohtds logger. Components get children of it."""
    logger = logging.getLogger("prohtds")
    logger.handlers.clear()
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by every subcommand."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--etcd-servers", type=str, dest="etcd_servers",
        help="Comma-separated etcd endpoints (default: $ETCD_SERVERS or localhost:2379)",
    )
    parser.add_argument(
        "--key-prefix", type=str, dest="key_prefix",
        help="Key prefix holding service registrations (default: /)",
    )
    parser.add_argument(
        "--connect-timeout", type=float, dest="connect_timeout",
        help="Seconds to wait for an etcd endpoint at startup (default: 5)",
    )
    parser.add_argument(
        "--log-level", type=str, dest="log_level",
        help="Logging level (default: INFO)",
    )


def _add_lease_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--lease-ttl", type=int, dest="lease_ttl", help="Lease TTL in seconds (default: 10)")
    parser.add_argument(
        "--renew-interval", type=float, dest="renew_interval",
        help="Seconds between lease renewals, less than half the TTL (default: 3)",
    )
    parser.add_argument(
        "--max-renewal-failures", type=int, dest="max_renewal_failures",
        help="Consecutive renewal failures before exiting (default: 3)",
    )


def _build_config(args) -> ProhtdsConfig:
    """Build a config from file, environment and CLI flags, in that order."""
    if args.config:
        config = load_config(args.config)
    else:
        config = ProhtdsConfig()
    merge_env(config)
    merge_cli_args(config, args)
    return validate_config(config)


def _install_signal_handlers(stop: threading.Event, logger: logging.Logger) -> None:
    def _handle(signum, frame):
        logger.info("received %s", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _start_agent(config: ProhtdsConfig, presence, logger: logging.Logger) -> EtcdAgent:
    return EtcdAgent.start(
        config.etcd_servers,
        presence=presence,
        logger=logger.getChild("keepalive"),
        lease_ttl=config.lease_ttl,
        renew_interval=config.renew_interval,
        max_failures=config.max_renewal_failures,
        connect_timeout=config.connect_timeout,
    )


def cmd_serve(args, config: ProhtdsConfig, logger: logging.Logger) -> None:
    """Register this process in etcd and serve GET /services."""
    metrics_port = config.presence_metrics_port
    if metrics_port is None:
        metrics_port = config.port
    presence = Presence(
        key=config.effective_presence_key,
        service=ServiceDef(
            service_port=config.port,
            metrics_port=metrics_port,
            metrics_url=config.presence_metrics_url,
        ),
    )

    logger.info("connecting to etcd servers %s", ",".join(config.etcd_servers))
    agent = _start_agent(config, presence, logger)
    server = make_discovery_server(
        agent.client,
        host=config.host,
        port=config.port,
        logger=logger.getChild("discovery"),
        prefix=config.key_prefix,
    )

    stop = threading.Event()
    _install_signal_handlers(stop, logger)
    run_supervisor(
        agent, server, stop,
        logger=logger.getChild("supervisor"),
        drain_timeout=config.drain_timeout,
    )


def _format_groups(groups, fmt: str) -> str:
    """Format target groups for output."""
    if fmt == "json":
        return json.dumps([g.to_dict() for g in groups], indent=2)
    lines = []
    for g in groups:
        lines.append(f"{g.labels.get('job', '')}  {' '.join(g.targets)}")
    return "\n".join(lines) if lines else "(no services)"


def cmd_list(args, config: ProhtdsConfig, logger: logging.Logger) -> None:
    """Print the discovery document as GET /services would return it."""
    client = connect(config.etcd_servers, config.connect_timeout, logger)
    try:
        groups = list_target_groups(client, prefix=config.key_prefix, logger=logger.getChild("discovery"))
    except DiscoveryError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(_format_groups(groups, args.format))


def cmd_register(args, config: ProhtdsConfig, logger: logging.Logger) -> None:
    """Register an external service and keep its lease alive until interrupted."""
    presence = Presence(
        key=f"/{args.category}/{args.job}/{args.instance}",
        service=ServiceDef(
            service_port=args.service_port if args.service_port is not None else args.metrics_port,
            metrics_port=args.metrics_port,
            metrics_url=args.metrics_url,
        ),
    )
    agent = _start_agent(config, presence, logger)
    stop = threading.Event()
    _install_signal_handlers(stop, logger)
    agent.run(stop)


def cmd_config(args, config: ProhtdsConfig, logger: logging.Logger) -> None:
    """Print the effective configuration as YAML."""
    print(config_to_yaml(config), end="")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="prohtds",
        description="prohtds: Prometheus HTTP service discovery backed by etcd",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser(
        "serve", help="Register in etcd and serve the discovery endpoint",
    )
    _add_common_args(serve_parser)
    _add_lease_args(serve_parser)
    serve_parser.add_argument("--host", type=str, help="Listen address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Listen port (default: $PORT or 8080)")
    serve_parser.add_argument(
        "--drain-timeout", type=float, dest="drain_timeout",
        help="Seconds to let in-flight requests finish on shutdown (default: 5)",
    )
    serve_parser.add_argument(
        "--presence-key", type=str, dest="presence_key",
        help="Key this process registers itself under (default: /discovery/prohtds/<hostname>)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # list
    list_parser = subparsers.add_parser("list", help="Print the current target groups")
    _add_common_args(list_parser)
    list_parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    list_parser.set_defaults(func=cmd_list)

    # register
    reg_parser = subparsers.add_parser(
        "register", help="Register a service instance and keep it alive until interrupted",
    )
    _add_common_args(reg_parser)
    _add_lease_args(reg_parser)
    reg_parser.add_argument("job", type=str, help="Job name (becomes the 'job' label)")
    reg_parser.add_argument("instance", type=str, help="Instance host name (becomes the target host)")
    reg_parser.add_argument(
        "--metrics-port", type=int, required=True, dest="metrics_port",
        help="Port Prometheus scrapes",
    )
    reg_parser.add_argument(
        "--service-port", type=int, default=None, dest="service_port",
        help="Port the service itself listens on (default: the metrics port)",
    )
    reg_parser.add_argument(
        "--metrics-url", type=str, default="/metrics", dest="metrics_url",
        help="Metrics path (default: /metrics)",
    )
    reg_parser.add_argument(
        "--category", type=str, default=PRESENCE_CATEGORY,
        help=f"Second key segment (default: {PRESENCE_CATEGORY})",
    )
    reg_parser.set_defaults(func=cmd_register)

    # config
    config_parser = subparsers.add_parser("config", help="Print the effective configuration")
    _add_common_args(config_parser)
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logger = build_logger()
    try:
        config = _build_config(args)
        logger.setLevel(config.log_level.upper())
        args.func(args, config, logger)
    except ProhtdsError as e:
        logger.error("%s", e)
        sys.exit(1)
