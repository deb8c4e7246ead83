from __future__ import annotations

"""Application configuration (loaded from environment variables + .env).

Design:
- SMTP host is a single "hostname:port" string, the way mail relays are usually
  written in deployment configs.
- Credentials are optional; without them the session skips AUTH.
- Environment variables always override .env file values.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

DEFAULT_SMTP_PORT = 25


class SmtpSettings(BaseModel):
    host: str = "localhost:25"
    username: str | None = None
    password: str | None = None
    timeout_seconds: float = 20
    debug: bool = False

    @field_validator("host")
    @classmethod
    def _valid_host(cls, value: str) -> str:
        v = value.strip()
        if not v:
            raise ValueError("host cannot be empty")
        _, _, port = v.rpartition(":")
        if ":" in v and (not port.isdigit() or not 1 <= int(port) <= 65535):
            raise ValueError("port must be in 1..65535")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @property
    def hostname(self) -> str:
        """Host portion of the host string, used for HELO, TLS and AUTH."""
        if ":" in self.host:
            return self.host.rpartition(":")[0]
        return self.host

    @property
    def port(self) -> int:
        if ":" in self.host:
            return int(self.host.rpartition(":")[2])
        return DEFAULT_SMTP_PORT

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and bool(self.password)


class AppConfig(BaseModel):
    smtp: SmtpSettings = SmtpSettings()

    # Where large messages are spooled before sending
    spool_dir: Path = Path(".")

    log_path: Path = Path("logs/mailrun.log")
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        v = value.strip().upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError("log_level must be DEBUG, INFO, WARNING or ERROR")
        return v


def load_config(env_file: str | None = ".env") -> AppConfig:
    if env_file:
        # Load .env values but let shell environment variables win
        load_dotenv(env_file, override=False)
    return AppConfig(
        smtp=SmtpSettings(
            host=_getenv_str("SMTP_HOST", "localhost:25"),
            username=_getenv_opt("SMTP_USERNAME"),
            password=_getenv_opt("SMTP_PASSWORD"),
            timeout_seconds=float(_getenv_str("SMTP_TIMEOUT_SECONDS", "20")),
            debug=_getenv_str("SMTP_DEBUG", "0").lower() in {"1", "true", "yes", "on"},
        ),
        spool_dir=Path(_getenv_str("SPOOL_DIR", ".")),
        log_path=Path(_getenv_str("LOG_PATH", "logs/mailrun.log")),
        log_level=_getenv_str("LOG_LEVEL", "INFO"),
    )


def _getenv_opt(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _getenv_str(name: str, default: str) -> str:
    value = _getenv_opt(name)
    return value if value is not None else default
