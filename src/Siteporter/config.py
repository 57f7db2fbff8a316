"""Settings loader for Siteporter."""

from pathlib import Path
from typing import Any

import tomllib
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _toml_settings_source() -> dict[str, Any]:
    """Load settings from config.toml with keys mapped to Settings fields.

    This source has LOWER priority than env/.env so those can override TOML.
    """
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        return {}
    with cfg_path.open("rb") as f:
        t = tomllib.load(f)
    out: dict[str, Any] = {
        "env": t.get("app", {}).get("env", "dev"),
        "database_url": t.get("database", {}).get(
            "url", "sqlite+aiosqlite:///./siteporter.sqlite3"
        ),
        "uploads_dir": t.get("uploads", {}).get("dir", "uploads"),
        "uploads_base_url": t.get("uploads", {}).get("base_url", "/uploads"),
        # Logging config
        "logging_level": t.get("logging", {}).get("level", "INFO"),
        # Per-handler levels: strings INFO|DEBUG|WARNING|ERROR|CRITICAL|NONE
        # Backward-compatible: if console/to_file are bools, map True->level, False->NONE
        "logging_console": None,
        "logging_file": None,
        "logging_file_path": t.get("logging", {}).get("file_path", "logs/siteporter.jsonl"),
        "logging_max_bytes": t.get("logging", {}).get("max_bytes", 5_000_000),
        "logging_backup_count": t.get("logging", {}).get("backup_count", 5),
    }

    log_cfg = t.get("logging", {}) or {}
    console_val = log_cfg.get("console", None)
    file_val = log_cfg.get("to_file", None)
    overall = out["logging_level"]

    def _norm_level(v, default):
        if isinstance(v, str):
            return v.upper()
        if isinstance(v, bool):
            return default if v else "NONE"
        return default

    out["logging_console"] = _norm_level(console_val, overall)
    out["logging_file"] = _norm_level(file_val, overall)

    # Importer options; only pass keys that are present so model defaults apply
    # Example TOML:
    # [importer]
    # fetch_attachments = true
    # aggressive_url_search = false
    # default_author = 1
    importer_cfg = t.get("importer", {}) or {}
    if importer_cfg:
        out["importer"] = {
            k: v for k, v in importer_cfg.items() if k in ImportOptions.model_fields
        }

    return out


class ImportOptions(BaseModel):
    """Options recognised by the importer for one run."""

    # Prefill trades memory for one existence query per candidate duplicate
    prefill_existing_posts: bool = True
    prefill_existing_comments: bool = True
    prefill_existing_terms: bool = True
    prefill_existing_users: bool = True
    # True keeps compatibility with sites that display guids; False allows re-import dedupe
    update_attachment_guids: bool = False
    fetch_attachments: bool = False
    aggressive_url_search: bool = False
    default_author: int | None = None
    max_attachment_size: int = Field(default=0, ge=0, description="Bytes; 0 means unlimited.")
    attachment_concurrency: int = Field(default=4, ge=1)
    fetch_timeout_seconds: float = Field(default=60.0, gt=0)
    max_remap_passes: int = Field(default=3, ge=1)


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./siteporter.sqlite3")

    # --- Uploads (attachment files) ---
    uploads_dir: str = "uploads"
    uploads_base_url: str = "/uploads"

    # --- Importer ---
    importer: ImportOptions = ImportOptions()

    # --- Logging ---
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_file_path: str = "logs/siteporter.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",  # Safely ignore any extra env vars
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Precedence (highest to lowest):
        # 1) init_settings (explicit overrides in code/tests)
        # 2) dotenv (.env in cwd), developer-local overrides
        # 3) env_settings (OS env)
        # 4) TOML (repo config.toml), project defaults
        # 5) file_secret_settings
        return (
            init_settings,
            dotenv_settings,
            env_settings,
            _toml_settings_source,
            file_secret_settings,
        )


def load_settings() -> Settings:
    return Settings()
