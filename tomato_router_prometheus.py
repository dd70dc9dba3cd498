#!/usr/bin/env python3
"""
Prometheus exporter for routers running Tomato firmware.

Every scrape of the metrics endpoint logs into the router's web UI, runs a set of
read-only shell commands through its console endpoint (shell.cgi) and reports
the parsed output with node_exporter metric names.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
import time
from typing import Optional
from urllib.parse import urlsplit

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server
from prometheus_client.registry import Collector

from tomato_router_client import RouterClient, RouterClientFactory
from tomato_router_client_exceptions import (AuthError, ConfigurationError, ExecError, ExecTransportError,
                                             ExecUnauthorized, ScrapeCancelled, TomatoRouterException)
from tomato_router_models import CollectorOutcome, CommandSpec, ErrorKind, RawOutput, ScrapeResult, Target
from tomato_router_parsers import DEFAULT_COLLECTORS, select_collectors
from tomato_router_prometheus_utils import MetricRegistry, liveness_sample, outcome_samples

logger = logging.getLogger(__name__)

# Metrics Registry
registry = CollectorRegistry()

scrape_duration_seconds = Histogram(
    "tomato_exporter_scrape_duration_seconds",
    "Time spent scraping the router",
    registry=registry,
)

collector_errors_total = Counter(
    "tomato_exporter_collector_errors_total",
    "Total number of failed collector runs",
    ["collector", "kind"],
    registry=registry,
)


class RouterScraper:
    """
    Runs scrape cycles: authenticate, run every enabled collector in catalog order, merge the samples.

    Commands for one target never overlap: a per-target lock is held for the
    whole cycle, and the router session lives only inside that cycle.
    """

    def __init__(self, client_factory: Optional[RouterClientFactory] = None):
        self.client_factory = client_factory or RouterClientFactory()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, target: Target) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(target.key, threading.Lock())

    def scrape(self, target: Target, cancel_event: Optional[threading.Event] = None) -> ScrapeResult:
        specs = select_collectors(target.collectors)
        cancel_event = cancel_event or threading.Event()
        with self._lock_for(target):
            start = time.monotonic()
            with scrape_duration_seconds.time():
                result = self._scrape_locked(target, specs, cancel_event)
            result.duration = time.monotonic() - start
        logger.info(f"[{target.host}] Scrape finished in {result.duration:.2f}s: "
                    f"up={int(result.up)}, {len(result.failed)} of {len(specs)} collectors failed")
        return result

    def _scrape_locked(self, target: Target, specs: list[CommandSpec],
                       cancel_event: threading.Event) -> ScrapeResult:
        result = ScrapeResult(target=target.host)
        metrics = MetricRegistry()

        with self.client_factory.connect(target) as client:
            try:
                self._check_cancelled(cancel_event, "auth")
                client.sessions.ensure_session()
            except (AuthError, ScrapeCancelled) as e:
                logger.error(f"[{target.host}] Authentication failed: {e}")
                result.outcomes.append(CollectorOutcome("auth", False, ErrorKind.of(e), str(e)))
                metrics.add(liveness_sample(False))
                result.samples = metrics.samples()
                return result

            result.up = True
            metrics.add(liveness_sample(True))

            batched = self._run_batch(client, specs, cancel_event) if target.batch_commands else {}
            for spec in specs:
                outcome, samples = self._run_collector(client, spec, batched.get(spec.name), cancel_event)
                result.outcomes.append(outcome)
                metrics.extend(samples)

        for outcome in result.outcomes:
            metrics.extend(outcome_samples(outcome))
        result.samples = metrics.samples()
        return result

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event, step: str):
        if cancel_event.is_set():
            raise ScrapeCancelled(f"Scrape cancelled before {step}")

    def _run_batch(self, client: RouterClient, specs: list[CommandSpec],
                   cancel_event: threading.Event) -> dict[str, RawOutput]:
        session = client.sessions.session
        try:
            self._check_cancelled(cancel_event, "batch")
            outputs = client.executor.run_batch(session, specs)
        except ScrapeCancelled:
            return {}
        except ExecError as e:
            logger.warning(f"[{client.target.host}] Batched run failed, running commands one by one: {e}")
            if isinstance(e, ExecUnauthorized):
                client.sessions.expire(session)
            return {}
        missing = [spec.name for spec in specs if spec.name not in outputs]
        if missing:
            logger.debug(f"[{client.target.host}] Batch returned no output for {missing}")
        return outputs

    def _run_collector(self, client: RouterClient, spec: CommandSpec, raw: Optional[RawOutput],
                       cancel_event: threading.Event):
        host = client.target.host
        start = time.monotonic()
        try:
            if raw is None:
                raw = self._execute(client, spec, cancel_event)
            samples = spec.parser(raw)
        except TomatoRouterException as e:
            kind, message = ErrorKind.of(e), str(e)
            logger.warning(f"[{host}] Collector {spec.name} failed ({kind.value}): {e}")
        except Exception as e:
            kind, message = ErrorKind.INTERNAL, f"{e.__class__.__name__}: {e}"
            logger.exception(f"[{host}] Collector {spec.name} crashed: {e}")
        else:
            duration = time.monotonic() - start
            logger.debug(f"[{host}] Collector {spec.name}: {len(samples)} samples in {duration:.2f}s")
            return CollectorOutcome(spec.name, True, duration=duration, samples=len(samples)), samples

        collector_errors_total.labels(collector=spec.name, kind=kind.value).inc()
        return CollectorOutcome(spec.name, False, kind, message, time.monotonic() - start), []

    def _execute(self, client: RouterClient, spec: CommandSpec, cancel_event: threading.Event) -> RawOutput:
        """
        Runs one command. Transport failures are retried up to transport_retries times;
        a rejected session gets exactly one re-login across all of those attempts.
        """
        retries = client.target.transport_retries
        attempt = 0
        reauthenticated = False
        while True:
            self._check_cancelled(cancel_event, spec.name)
            session = client.sessions.ensure_session()
            try:
                return client.executor.run(session, spec)
            except ExecUnauthorized:
                if reauthenticated:
                    raise
                reauthenticated = True
                client.sessions.expire(session)
            except ExecTransportError as e:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.info(f"[{client.target.host}] {e}, retrying ({attempt}/{retries})")


class TomatoRouterCollector(Collector):
    """prometheus_client collector running one scrape of the target per collect() call."""

    def __init__(self, target: Target, scraper: Optional[RouterScraper] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.target = target
        self.scraper = scraper or RouterScraper()
        self.cancel_event = cancel_event or threading.Event()

    def collect(self):
        result = self.scraper.scrape(self.target, self.cancel_event)
        metrics = MetricRegistry()
        metrics.extend(result.samples)
        return metrics.families()


def create_app(target: Target, metrics_port: int = 8000, metrics_addr: str = "0.0.0.0"):
    """
    Create and configure the Prometheus metrics exporter.

    Args:
        target: Validated router connection descriptor
        metrics_port: Port to expose metrics on (default: 8000)
        metrics_addr: Address to bind the metrics server to

    Returns:
        Callable that starts the exporter and blocks until SIGINT/SIGTERM
    """

    def app():
        stop_event = threading.Event()
        collector = TomatoRouterCollector(target)

        def shutdown(signum, _frame):
            logger.info(f"Received signal {signum}, shutting down exporter")
            collector.cancel_event.set()
            stop_event.set()

        signal.signal(signal.SIGTERM, shutdown)
        signal.signal(signal.SIGINT, shutdown)

        registry.register(collector)
        start_http_server(metrics_port, addr=metrics_addr, registry=registry)
        logger.info(f"Scraping router at {target.base_url} on demand, "
                    f"collectors: {', '.join(s.name for s in select_collectors(target.collectors))}")
        logger.info(f"Metrics available at http://{metrics_addr}:{metrics_port}/metrics")

        stop_event.wait()

    return app


def build_target(args: argparse.Namespace) -> Target:
    """Turn parsed command line arguments into a validated Target."""
    host = args.router_host
    if "://" not in host:
        host = f"http://{host}"
    url = urlsplit(host)

    username, sep, password = args.router_auth.partition(":")
    if not sep:
        raise ConfigurationError("Router authentication must be in the form username:password")

    collectors = tuple(c.strip() for c in args.collectors.split(",") if c.strip())
    select_collectors(collectors)

    try:
        port = url.port or (443 if url.scheme == "https" else 80)
    except ValueError as e:
        raise ConfigurationError(f"Invalid router port in {args.router_host!r}") from e

    return Target(
        host=url.hostname or "",
        port=port,
        scheme=url.scheme,
        username=username,
        password=password,
        collectors=collectors,
        auth_timeout=args.auth_timeout,
        command_timeout=args.command_timeout,
        http_id=args.http_id or None,
        verify_tls=not args.insecure,
        batch_commands=args.batch_commands,
        transport_retries=args.transport_retries,
    )


def build_parser() -> argparse.ArgumentParser:
    # Read defaults from environment variables
    default_router_host = os.getenv("TOMATO_ROUTER_HOST")
    default_router_auth = os.getenv("TOMATO_ROUTER_AUTH")
    default_metrics_port = int(os.getenv("TOMATO_METRICS_PORT", "8000"))
    default_log_level = os.getenv("TOMATO_LOG_LEVEL", "INFO")

    parser = argparse.ArgumentParser(
        description="Prometheus exporter for Tomato router metrics",
        epilog="Environment variables can be used as defaults: "
               "TOMATO_ROUTER_HOST, TOMATO_ROUTER_AUTH, TOMATO_HTTP_ID, TOMATO_COLLECTORS, "
               "TOMATO_METRICS_PORT, TOMATO_LOG_LEVEL"
    )
    parser.add_argument(
        "--router-host",
        default=default_router_host,
        required=not default_router_host,
        help="Router host or IP address, optionally with scheme and port "
             "(e.g., 192.168.1.1 or https://192.168.1.1:8443) [env: TOMATO_ROUTER_HOST]"
    )
    parser.add_argument(
        "--router-auth",
        default=default_router_auth,
        required=not default_router_auth,
        help="Router web UI authentication (format: username:password) [env: TOMATO_ROUTER_AUTH]"
    )
    parser.add_argument(
        "--http-id",
        default=os.getenv("TOMATO_HTTP_ID"),
        help="Session token to use when it cannot be read from the login page [env: TOMATO_HTTP_ID]"
    )
    parser.add_argument(
        "--collectors",
        default=os.getenv("TOMATO_COLLECTORS", ",".join(DEFAULT_COLLECTORS)),
        help=f"Comma separated collectors to enable (default: {','.join(DEFAULT_COLLECTORS)}) "
             "[env: TOMATO_COLLECTORS]"
    )
    parser.add_argument("--auth-timeout", type=float, default=10.0,
                        help="Login request timeout in seconds (default: 10)")
    parser.add_argument("--command-timeout", type=float, default=15.0,
                        help="Per command timeout in seconds (default: 15)")
    parser.add_argument("--transport-retries", type=int, default=0,
                        help="Retries of a command after a network failure (default: 0)")
    parser.add_argument("--batch-commands", action="store_true",
                        help="Run all collector commands in a single console request")
    parser.add_argument("--insecure", action="store_true",
                        help="Do not verify the router's TLS certificate")
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=default_metrics_port,
        help="Port to expose Prometheus metrics on (default: 8000) [env: TOMATO_METRICS_PORT]"
    )
    parser.add_argument("--metrics-addr", default="0.0.0.0",
                        help="Address to expose Prometheus metrics on (default: 0.0.0.0)")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO) [env: TOMATO_LOG_LEVEL]"
    )
    return parser


def main(argv=None):
    """Main entry point for the Prometheus exporter."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Validate required arguments
    if not args.router_host:
        parser.error("--router-host is required or set TOMATO_ROUTER_HOST environment variable")
    if not args.router_auth:
        parser.error("--router-auth is required or set TOMATO_ROUTER_AUTH environment variable")

    try:
        target = build_target(args)
    except ConfigurationError as e:
        parser.error(str(e))

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    app = create_app(target, args.metrics_port, args.metrics_addr)
    app()


if __name__ == "__main__":
    main()
