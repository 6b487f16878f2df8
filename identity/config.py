"""Configuration management for the identity service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_flag(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _parse_int(value: object, name: str, *, minimum: int = 1) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return parsed


@dataclass(frozen=True)
class SMTPSettings:
    """Connection details for the outbound mail relay."""

    host: str = "localhost"
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = "no-reply@localhost"
    use_tls: bool = False
    start_tls: Optional[bool] = None
    timeout: float = 10.0

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "SMTPSettings":
        start_tls = data.get("start_tls")
        return SMTPSettings(
            host=str(data.get("host", "localhost")),
            port=_parse_int(data.get("port", 587), "smtp.port"),
            username=str(data["username"]) if data.get("username") is not None else None,
            password=str(data["password"]) if data.get("password") is not None else None,
            sender=str(data.get("sender", "no-reply@localhost")),
            use_tls=_parse_flag(data.get("use_tls", False), "smtp.use_tls"),
            start_tls=_parse_flag(start_tls, "smtp.start_tls") if start_tls is not None else None,
            timeout=float(data.get("timeout", 10.0)),
        )


@dataclass(frozen=True)
class Settings:
    """Top-level service configuration."""

    database_path: Path
    redis_url: Optional[str] = None
    code_ttl_seconds: int = 300
    smtp: SMTPSettings = field(default_factory=SMTPSettings)

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "Settings":
        raw_db = data.get("database_path")
        if raw_db:
            db_path = Path(str(raw_db)).expanduser()
            if not db_path.is_absolute() and base_path is not None:
                db_path = base_path / db_path
            database_path = db_path.resolve(strict=False)
        else:
            database_path = resolve_database_path(None)

        smtp_raw = data.get("smtp") or {}
        if not isinstance(smtp_raw, Mapping):
            raise ValueError("The 'smtp' configuration section must be a mapping")

        redis_url = data.get("redis_url")
        return Settings(
            database_path=database_path,
            redis_url=str(redis_url) if redis_url else None,
            code_ttl_seconds=_parse_int(data.get("code_ttl_seconds", 300), "code_ttl_seconds"),
            smtp=SMTPSettings.from_dict(smtp_raw),
        )


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the identity database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "identity.sqlite3").resolve(strict=False)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "identity.yaml").resolve(strict=False)
    return candidate


def _apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    smtp_updates: Dict[str, object] = {}
    if environ.get("IDENTITY_SMTP_HOST"):
        smtp_updates["host"] = environ["IDENTITY_SMTP_HOST"]
    if environ.get("IDENTITY_SMTP_PORT"):
        smtp_updates["port"] = _parse_int(environ["IDENTITY_SMTP_PORT"], "IDENTITY_SMTP_PORT")
    if environ.get("IDENTITY_SMTP_USERNAME"):
        smtp_updates["username"] = environ["IDENTITY_SMTP_USERNAME"]
    if environ.get("IDENTITY_SMTP_PASSWORD"):
        smtp_updates["password"] = environ["IDENTITY_SMTP_PASSWORD"]
    if environ.get("IDENTITY_SMTP_SENDER"):
        smtp_updates["sender"] = environ["IDENTITY_SMTP_SENDER"]
    if environ.get("IDENTITY_SMTP_TLS"):
        smtp_updates["use_tls"] = _parse_flag(environ["IDENTITY_SMTP_TLS"], "IDENTITY_SMTP_TLS")

    updates: Dict[str, object] = {}
    if environ.get("IDENTITY_DB_PATH"):
        updates["database_path"] = resolve_database_path(environ["IDENTITY_DB_PATH"])
    if environ.get("IDENTITY_REDIS_URL"):
        updates["redis_url"] = environ["IDENTITY_REDIS_URL"]
    if environ.get("IDENTITY_CODE_TTL"):
        updates["code_ttl_seconds"] = _parse_int(environ["IDENTITY_CODE_TTL"], "IDENTITY_CODE_TTL")
    if smtp_updates:
        updates["smtp"] = replace(settings.smtp, **smtp_updates)

    return replace(settings, **updates) if updates else settings


def load_settings(
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from YAML, then apply ``IDENTITY_*`` environment overrides.

    A missing configuration file is not an error; defaults are used instead.
    """

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("IDENTITY_CONFIG"))

    raw: object = {}
    if path.is_file():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, Mapping):
        raise ValueError("Configuration file must contain a mapping at the top level")

    settings = Settings.from_dict(raw, base_path=path.parent)
    return _apply_env_overrides(settings, env)


__all__ = [
    "SMTPSettings",
    "Settings",
    "load_settings",
    "resolve_config_path",
    "resolve_database_path",
]
