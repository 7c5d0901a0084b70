from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


class ConfigError(RuntimeError):
    def __init__(self, problems: list[str]):
        super().__init__("invalid configuration: " + "; ".join(problems))
        self.problems = problems


@dataclass(slots=True)
class Settings:
    finnhub_api_key: str
    discord_webhook_url: str
    finnhub_ws_url: str = "wss://ws.finnhub.io"
    discord_debug_webhook_url: Optional[str] = None
    teams_webhook_url: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    console_notifications: bool = False
    notify_timeout_s: float = 10.0
    redis_url: str = "redis://localhost:6379/0"
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    log_level: str = "info"
    log_json: bool = False
    alert_cooldown_s: float = 300.0
    refresh_interval_s: float = 300.0
    ws_reconnect_attempts: int = 5
    ws_reconnect_delay_s: float = 5.0
    webhook_secret: Optional[str] = None
    verify_webhook_signature: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def summary(self) -> dict:
        """Loggable view: secrets reduced to configured/unset."""
        return {
            "environment": self.environment,
            "port": self.port,
            "redis_url": self.redis_url,
            "finnhub_ws_url": self.finnhub_ws_url,
            "transports": {
                "discord": True,
                "teams": bool(self.teams_webhook_url),
                "telegram": self.telegram_enabled,
                "console": self.console_notifications,
            },
            "ops_channel": bool(self.discord_debug_webhook_url),
            "alert_cooldown_s": self.alert_cooldown_s,
            "refresh_interval_s": self.refresh_interval_s,
            "webhook_signature": self.verify_webhook_signature and bool(self.webhook_secret),
        }


def _bool(v: Optional[str], default: bool) -> bool:
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def settings_from_env(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment; raises ConfigError listing every problem."""
    env = os.environ if env is None else env
    problems: list[str] = []

    def req(name: str) -> str:
        v = (env.get(name) or "").strip()
        if not v:
            problems.append(f"{name} is required")
        return v

    def opt(name: str) -> Optional[str]:
        v = (env.get(name) or "").strip()
        return v or None

    def num(name: str, default, cast):
        raw = env.get(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            v = cast(raw)
        except ValueError:
            problems.append(f"{name} must be a number, got {raw!r}")
            return default
        if v < 0:
            problems.append(f"{name} must be >= 0")
        return v

    settings = Settings(
        finnhub_api_key=req("FINNHUB_API_KEY"),
        discord_webhook_url=req("DISCORD_WEBHOOK_URL"),
        finnhub_ws_url=opt("FINNHUB_WS_URL") or "wss://ws.finnhub.io",
        discord_debug_webhook_url=opt("DEBUG_DISCORD_WEBHOOK_URL"),
        teams_webhook_url=opt("TEAMS_WEBHOOK_URL"),
        telegram_bot_token=opt("TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=opt("TELEGRAM_CHAT_ID"),
        console_notifications=_bool(env.get("NOTIFY_CONSOLE"), False),
        notify_timeout_s=min(num("NOTIFY_TIMEOUT_S", 10.0, float), 10.0),
        redis_url=opt("REDIS_URL") or "redis://localhost:6379/0",
        host=opt("HOST") or "0.0.0.0",
        port=num("PORT", 3000, int),
        environment=(opt("ENVIRONMENT") or "development").lower(),
        log_level=(opt("LOG_LEVEL") or "info").lower(),
        log_json=_bool(env.get("LOG_JSON"), False),
        alert_cooldown_s=num("ALERT_COOLDOWN_S", 300.0, float),
        refresh_interval_s=num("ALERT_REFRESH_INTERVAL_S", 300.0, float),
        ws_reconnect_attempts=num("WS_RECONNECT_ATTEMPTS", 5, int),
        ws_reconnect_delay_s=num("WS_RECONNECT_DELAY_S", 5.0, float),
        webhook_secret=opt("WEBHOOK_SECRET"),
        verify_webhook_signature=_bool(env.get("VERIFY_WEBHOOK_SIGNATURE"), True),
    )
    if settings.refresh_interval_s == 0:
        problems.append("ALERT_REFRESH_INTERVAL_S must be > 0")
    if problems:
        raise ConfigError(problems)
    return settings
