from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml

from .circuit_breaker import CircuitBreakerConfig

LOG_LEVELS = ("debug", "info", "warn", "warning", "error")


class ConfigError(ValueError):
    pass


def default_token_path() -> str:
    home = os.environ.get("HOME") or "/root"
    return os.path.join(home, ".tado-exporter", "token.json")


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    try:
        if s.startswith(":"):
            return "", int(s[1:])
        if ":" in s:
            host, port_s = s.rsplit(":", 1)
            return host, int(port_s)
        return "", int(s)
    except ValueError as e:
        raise ConfigError(f"invalid listen address: {s!r}") from e


def load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e

    try:
        if path.lower().endswith(".json"):
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping/object")
    return data


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    s = cfg.get(name, {})
    return s if isinstance(s, dict) else {}


def _pick(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


@dataclass
class Config:
    listen_address: str = ":9100"
    telemetry_path: str = "/metrics"
    token_path: str = ""
    token_passphrase: str = field(default="", repr=False)
    home_id: str = ""
    scrape_timeout: float = 10.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout: float = 30.0
    log_level: str = "info"

    def __post_init__(self) -> None:
        if not self.token_path:
            self.token_path = default_token_path()

    @property
    def host(self) -> str:
        return parse_listen_address(self.listen_address)[0]

    @property
    def port(self) -> int:
        return parse_listen_address(self.listen_address)[1]

    def circuit_breaker(self) -> CircuitBreakerConfig:
        return CircuitBreakerConfig(
            max_consecutive_failures=self.circuit_breaker_threshold,
            timeout_seconds=self.circuit_breaker_timeout,
        )

    def validate(self) -> None:
        if not self.token_passphrase:
            raise ConfigError("token passphrase is required (--token-passphrase or TADO_TOKEN_PASSPHRASE)")
        port = self.port
        if port < 1 or port > 65535:
            raise ConfigError(f"invalid port: {port} (must be between 1 and 65535)")
        if not self.telemetry_path.startswith("/"):
            raise ConfigError(f"invalid telemetry path: {self.telemetry_path} (must start with /)")
        if self.scrape_timeout < 1:
            raise ConfigError(f"invalid scrape-timeout: {self.scrape_timeout:g} (must be at least 1 second)")
        if self.circuit_breaker_threshold < 1:
            raise ConfigError(f"invalid circuit-breaker threshold: {self.circuit_breaker_threshold} (must be at least 1)")
        if self.circuit_breaker_timeout <= 0:
            raise ConfigError(f"invalid circuit-breaker timeout: {self.circuit_breaker_timeout:g} (must be positive)")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigError(f"invalid log-level: {self.log_level} (must be one of: debug, info, warn, error)")

    def __str__(self) -> str:
        return (
            f"Config{{listen={self.listen_address}, telemetry_path={self.telemetry_path}, token_path={self.token_path}, "
            f"home_id={self.home_id or '*'}, scrape_timeout={self.scrape_timeout:g}s, "
            f"circuit_breaker={self.circuit_breaker_threshold}/{self.circuit_breaker_timeout:g}s, log_level={self.log_level}}}"
        )


def build_config(options: Dict[str, Any], file_cfg: Optional[Dict[str, Any]] = None) -> Config:
    """Merge command-line/env options over config-file values over defaults.

    ``options`` holds the click option values; ``None`` means "not given".
    """
    file_cfg = file_cfg or {}
    web = _section(file_cfg, "web")
    tado = _section(file_cfg, "tado")
    scrape = _section(file_cfg, "scrape")
    cb = _section(file_cfg, "circuit_breaker")
    log = _section(file_cfg, "log")

    defaults = Config()

    listen = _pick(options.get("listen_address"), web.get("listen_address"))
    port = options.get("port")
    if listen is None and port is not None:
        listen = f":{port}"

    try:
        return Config(
            listen_address=str(_pick(listen, defaults.listen_address)),
            telemetry_path=str(_pick(options.get("telemetry_path"), web.get("telemetry_path"), defaults.telemetry_path)),
            token_path=os.path.expanduser(str(_pick(options.get("token_path"), tado.get("token_path"), defaults.token_path))),
            token_passphrase=str(_pick(options.get("token_passphrase"), tado.get("token_passphrase"), "")),
            home_id=str(_pick(options.get("home_id"), tado.get("home_id"), "")).strip(),
            scrape_timeout=float(_pick(options.get("scrape_timeout"), scrape.get("timeout_seconds"), defaults.scrape_timeout)),
            circuit_breaker_threshold=int(_pick(options.get("circuit_breaker_threshold"), cb.get("threshold"), defaults.circuit_breaker_threshold)),
            circuit_breaker_timeout=float(_pick(options.get("circuit_breaker_timeout"), cb.get("timeout_seconds"), defaults.circuit_breaker_timeout)),
            log_level=str(_pick(options.get("log_level"), log.get("level"), defaults.log_level)).lower(),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid configuration value: {e}") from e
