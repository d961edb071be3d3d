from __future__ import annotations

import logging
from typing import Optional

import click
from prometheus_client import CollectorRegistry
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from . import __version__
from .api import TadoClientAdapter
from .auth import AuthError, authenticated_session
from .circuit_breaker import CircuitBreakerAPI
from .collector import TadoCollector
from .config import Config, ConfigError, build_config, load_config_file
from .metrics import ExporterMetrics, MetricDescriptors
from .server import serve, setup_logging


def build_registry(cfg: Config, api) -> CollectorRegistry:
    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)

    protected = CircuitBreakerAPI(api, config=cfg.circuit_breaker())
    collector = TadoCollector(
        protected,
        MetricDescriptors(),
        scrape_timeout=cfg.scrape_timeout,
        home_id=cfg.home_id,
    ).with_exporter_metrics(ExporterMetrics())
    registry.register(collector)
    return registry


def _print_login_url(url: str) -> None:
    click.echo(f"\nNo token found. Visit this link to authenticate:\n{url}\n")


@click.command()
@click.option("--config.file", "config_file", envvar="TADO_EXPORTER_CONFIG", default=None, help="JSON or YAML config file.")
@click.option("--web.listen-address", "listen_address", envvar="TADO_LISTEN_ADDRESS", default=None, help="Address to listen on, e.g. :9100.")
@click.option("--port", "port", envvar="TADO_PORT", type=int, default=None, help="HTTP server listen port.")
@click.option("--web.telemetry-path", "telemetry_path", envvar="TADO_TELEMETRY_PATH", default=None, help="Path under which to expose metrics.")
@click.option("--token-path", "token_path", envvar="TADO_TOKEN_PATH", default=None, help="Where the OAuth token is stored.")
@click.option("--token-passphrase", "token_passphrase", envvar="TADO_TOKEN_PASSPHRASE", default=None, help="Passphrase that encrypts the stored token.")
@click.option("--home-id", "home_id", envvar="TADO_HOME_ID", default=None, help="Only collect this home.")
@click.option("--scrape-timeout", "scrape_timeout", envvar="TADO_SCRAPE_TIMEOUT", type=float, default=None, help="Seconds allowed for one scrape.")
@click.option("--circuit-breaker.threshold", "circuit_breaker_threshold", envvar="TADO_CB_THRESHOLD", type=int, default=None, help="Consecutive failures before the breaker opens.")
@click.option("--circuit-breaker.timeout", "circuit_breaker_timeout", envvar="TADO_CB_TIMEOUT", type=float, default=None, help="Seconds the breaker stays open.")
@click.option("--log.level", "log_level", envvar="TADO_LOG_LEVEL", default=None, help="debug, info, warn or error.")
@click.version_option(__version__)
def cli(config_file: Optional[str], **options) -> None:
    try:
        file_cfg = load_config_file(config_file) if config_file else {}
        cfg = build_config(options, file_cfg)
        cfg.validate()
    except ConfigError as e:
        raise click.ClickException(f"Configuration error: {e}")

    setup_logging(cfg.log_level)
    logging.info("tado-exporter starting version=%s config=%s", __version__, cfg)

    try:
        session = authenticated_session(cfg.token_path, cfg.token_passphrase, notify=_print_login_url)
    except AuthError as e:
        raise click.ClickException(f"Authentication failed: {e}")
    logging.info("authenticated token_path=%s", cfg.token_path)

    registry = build_registry(cfg, TadoClientAdapter(session))
    serve(registry, cfg.host, cfg.port, cfg.telemetry_path)


def main() -> None:
    cli(prog_name="tado-exporter")


if __name__ == "__main__":
    main()
