"""Configuration for the copy-trading monitor."""
from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Mapping, Sequence

from .env import EnvVar, env_file_from_argv, load_env_file, read_overrides


# ──────────────────────────────────────────────────────────────
# Endpoints
# ──────────────────────────────────────────────────────────────

COPY_MANAGEMENT_URL = "https://www.binance.com/en/copy-trading/copy-management"
COPY_TRADING_URL = "https://www.binance.com/en/copy-trading"
BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"
OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


# ──────────────────────────────────────────────────────────────
# Config dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class Config:
    """Runtime configuration, populated from CLI + env."""

    env_file: str = ""

    # ── Broadcast hub ──
    ws_host: str = "0.0.0.0"
    ws_port: int = 8765
    # Empty token disables authentication
    ws_token: str = ""
    auth_timeout_s: float = 5.0
    shutdown_grace_s: float = 0.5

    # ── Polling loop ──
    poll_interval_s: float = 1.0
    error_backoff_s: float = 10.0
    housekeeping_every: int = 20
    auto_refresh_minutes: float = 10.0

    # ── Browser ──
    headless: bool = False
    profile_dir: str = ".copytrade-profile"
    copy_management_url: str = COPY_MANAGEMENT_URL
    copy_trading_url: str = COPY_TRADING_URL
    nav_timeout_s: float = 60.0
    table_timeout_s: float = 10.0
    login_timeout_s: float = 300.0
    login_poll_s: float = 5.0

    # ── Growth alerts (percentage points since first seen) ──
    quick_gainer_threshold: float = 10.0
    explosion_threshold: float = 20.0

    # ── Absolute PnL alerts (currency units) ──
    profit_alert_threshold: float = 30.0
    loss_alert_threshold: float = -100.0

    # ── PnL history ──
    avg_pnl_window_s: float = 3600.0

    # ── Stores ──
    data_dir: str = "data"

    # ── Analysis ──
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    analysis_timeout_s: float = 30.0

    # ── Logging ──
    log_level: str = "INFO"

    @property
    def requires_auth(self) -> bool:
        return bool(self.ws_token)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        cfg = cls()
        for name, value in read_overrides(ENV_VARS, environ).items():
            setattr(cfg, name, value)
        cfg.log_level = cfg.log_level.upper()
        return cfg


# Every environment variable the monitor reads
ENV_VARS = (
    EnvVar("COPYTRADE_WS_HOST", "ws_host"),
    EnvVar("COPYTRADE_WS_PORT", "ws_port", int),
    EnvVar("COPYTRADE_WS_TOKEN", "ws_token"),
    EnvVar("COPYTRADE_AUTH_TIMEOUT", "auth_timeout_s", float),
    EnvVar("COPYTRADE_SHUTDOWN_GRACE", "shutdown_grace_s", float),
    EnvVar("COPYTRADE_POLL_INTERVAL", "poll_interval_s", float),
    EnvVar("COPYTRADE_ERROR_BACKOFF", "error_backoff_s", float),
    EnvVar("COPYTRADE_HOUSEKEEPING_EVERY", "housekeeping_every", int),
    EnvVar("COPYTRADE_AUTO_REFRESH_MINUTES", "auto_refresh_minutes", float),
    EnvVar("COPYTRADE_HEADLESS", "headless", bool),
    EnvVar("COPYTRADE_PROFILE_DIR", "profile_dir"),
    EnvVar("COPYTRADE_MANAGEMENT_URL", "copy_management_url"),
    EnvVar("COPYTRADE_TRADING_URL", "copy_trading_url"),
    EnvVar("COPYTRADE_NAV_TIMEOUT", "nav_timeout_s", float),
    EnvVar("COPYTRADE_TABLE_TIMEOUT", "table_timeout_s", float),
    EnvVar("COPYTRADE_LOGIN_TIMEOUT", "login_timeout_s", float),
    EnvVar("COPYTRADE_QUICK_GAINER", "quick_gainer_threshold", float),
    EnvVar("COPYTRADE_EXPLOSION", "explosion_threshold", float),
    EnvVar("COPYTRADE_PROFIT_ALERT", "profit_alert_threshold", float),
    EnvVar("COPYTRADE_LOSS_ALERT", "loss_alert_threshold", float),
    EnvVar("COPYTRADE_AVG_PNL_WINDOW", "avg_pnl_window_s", float),
    EnvVar("COPYTRADE_DATA_DIR", "data_dir"),
    EnvVar("OPENAI_API_KEY", "openai_api_key"),
    EnvVar("OPENAI_MODEL", "openai_model"),
    EnvVar("COPYTRADE_LOG_LEVEL", "log_level"),
)


def parse_args(argv: Sequence[str] | None = None) -> Config:
    """Build Config from CLI args + environment variables (+ env file)."""
    env_file = env_file_from_argv(argv)
    load_env_file(env_file)

    p = argparse.ArgumentParser(description="copy-trading position monitor")
    p.add_argument("--env-file", default=env_file)
    p.add_argument("--host", default=None, help="websocket listen host")
    p.add_argument("--port", type=int, default=None, help="websocket listen port")
    p.add_argument("--token", default=None, help="client auth token (empty disables auth)")
    p.add_argument("--poll-interval", type=float, default=None)
    p.add_argument("--auto-refresh-minutes", type=float, default=None)
    p.add_argument("--headless", action=argparse.BooleanOptionalAction, default=None)
    p.add_argument("--profile-dir", default=None)
    p.add_argument("--quick-gainer-threshold", type=float, default=None)
    p.add_argument("--explosion-threshold", type=float, default=None)
    p.add_argument("--profit-alert", type=float, default=None)
    p.add_argument("--loss-alert", type=float, default=None)
    p.add_argument("--data-dir", default=None)
    p.add_argument("--log-level", default=None)
    args = p.parse_args(argv)

    # Env first (lowest priority), CLI on top
    cfg = Config.from_env()
    cfg.env_file = args.env_file

    if args.host is not None:
        cfg.ws_host = args.host
    if args.port is not None:
        cfg.ws_port = args.port
    if args.token is not None:
        cfg.ws_token = args.token.strip()
    if args.poll_interval is not None:
        cfg.poll_interval_s = args.poll_interval
    if args.auto_refresh_minutes is not None:
        cfg.auto_refresh_minutes = args.auto_refresh_minutes
    if args.headless is not None:
        cfg.headless = args.headless
    if args.profile_dir is not None:
        cfg.profile_dir = args.profile_dir
    if args.quick_gainer_threshold is not None:
        cfg.quick_gainer_threshold = args.quick_gainer_threshold
    if args.explosion_threshold is not None:
        cfg.explosion_threshold = args.explosion_threshold
    if args.profit_alert is not None:
        cfg.profit_alert_threshold = args.profit_alert
    if args.loss_alert is not None:
        cfg.loss_alert_threshold = args.loss_alert
    if args.data_dir is not None:
        cfg.data_dir = args.data_dir
    if args.log_level is not None:
        cfg.log_level = args.log_level.upper()

    if cfg.explosion_threshold < cfg.quick_gainer_threshold:
        p.error("--explosion-threshold must be >= --quick-gainer-threshold")

    return cfg
