from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator

from .surfaces import KNOWN_SURFACES


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    return int(raw)


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so most users only need `.env`; YAML stays an optional override.
    """
    timeout = (os.getenv("DKB_RUN_TIMEOUT_SECONDS", "") or "").strip()
    return {
        "bank": {
            "surface": os.getenv("DKB_SURFACE", "api"),
            "base_url": os.getenv("DKB_BASE_URL", ""),
            "username": os.getenv("DKB_USERNAME", ""),
            "password": os.getenv("DKB_PASSWORD", ""),
        },
        "mfa": {
            "selection": os.getenv("DKB_MFA_SELECTION", "latest"),
            "poll_interval_seconds": _env_float("DKB_MFA_POLL_INTERVAL_SECONDS", 3.0),
            "max_poll_attempts": _env_int("DKB_MFA_MAX_POLL_ATTEMPTS", 60),
            "run_timeout_seconds": float(timeout) if timeout else None,
        },
        "http": {
            "timeout_seconds": _env_float("DKB_HTTP_TIMEOUT_SECONDS", 30.0),
            "user_agent": os.getenv("DKB_USER_AGENT", ""),
        },
        "export": {
            "output_dir": os.getenv("EXPORT_DIR", "data/exports"),
            "strict_rows": _env_bool("DKB_STRICT_ROWS", default=False),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/export.log"),
        },
    }


class BankConfig(BaseModel):
    """
    Which banking surface to talk to and the primary-factor credentials.

    Username/password may stay empty here; the CLI prompts for them.
    """

    surface: Literal["web", "api"] = "api"
    base_url: str = ""
    username: str = ""
    password: str = Field(default="", repr=False)

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "BankConfig":
        base_url = (self.base_url or "").strip()
        if not base_url:
            base_url = KNOWN_SURFACES[self.surface].base_url

        base_url = base_url.rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"bank.base_url must be a full URL like {KNOWN_SURFACES[self.surface].base_url!r}")

        self.base_url = base_url
        return self


class MfaConfig(BaseModel):
    # "latest": pick the most recently enrolled device; "prompt": ask for a 1-based index.
    selection: Literal["latest", "prompt"] = "latest"
    poll_interval_seconds: float = Field(default=3.0, gt=0)
    max_poll_attempts: int = Field(default=60, ge=1)
    # Overall budget for the poll loop; None means interval * attempts.
    run_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class HttpConfig(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    user_agent: str = ""


class ExportConfig(BaseModel):
    output_dir: str = "data/exports"
    # False: collect undecodable rows in LedgerBatch.skipped; True: abort the batch on the first one.
    strict_rows: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/export.log"


class AppConfig(BaseModel):
    bank: BankConfig = BankConfig()
    mfa: MfaConfig = MfaConfig()
    http: HttpConfig = HttpConfig()
    export: ExportConfig = ExportConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
