"""Runs the keepalive loop and the HTTP listener until shutdown or first failure."""

import logging
import threading
from typing import Callable, Optional


class UnitGroup:
    """Run callables in threads sharing one stop event.

    The first unit to raise records its exception and sets the stop event;
    wait() joins every unit and re-raises that first exception.
    """

    def __init__(self, stop: threading.Event, logger: Optional[logging.Logger] = None):
        self.stop = stop
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._first_error: Optional[BaseException] = None

    def go(self, name: str, fn: Callable[[], None]) -> None:
        def _run():
            try:
                fn()
            except Exception as e:
                self.logger.error("%s failed: %s", name, e)
                with self._lock:
                    if self._first_error is None:
                        self._first_error = e
                self.stop.set()

        thread = threading.Thread(target=_run, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def wait(self) -> None:
        for thread in self._threads:
            thread.join()
        if self._first_error is not None:
            raise self._first_error


def run_supervisor(agent, server, stop: threading.Event,
                   logger: Optional[logging.Logger] = None,
                   drain_timeout: float = 5.0) -> None:
    """Serve until *stop* is set, then shut the listener down gracefully.

    Raises the first error from either unit.
    """
    log = logger or logging.getLogger(__name__)
    # shutdown() blocks until serve_forever() has run, so it may only be
    # called once the http unit is committed to serving.
    serve_lock = threading.Lock()
    serving = threading.Event()

    def _serve():
        with serve_lock:
            if stop.is_set():
                return
            serving.set()
        server.serve_forever()

    group = UnitGroup(stop, log)
    group.go("keepalive", lambda: agent.run(stop))
    group.go("http", _serve)

    host, port = server.server_address[:2]
    log.info("listening on %s:%d", host, port)

    stop.wait()
    log.info("shutting down")

    with serve_lock:
        started = serving.is_set()
    if started:
        # No new connections after this returns
        server.shutdown()
    if not server.drain(drain_timeout):
        log.warning(
            "%d request(s) still running after %.1fs drain", server.inflight, drain_timeout,
        )
    server.server_close()

    group.wait()
    log.info("shutdown complete")
