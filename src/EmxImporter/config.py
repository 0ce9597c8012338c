"""Settings loader for the EMX importer."""

from pathlib import Path
from typing import Any, Literal

import tomllib
from pydantic import Field
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
        # Logging config
        "logging_enabled": t.get("logging", {}).get("enabled", True),
        "logging_level": t.get("logging", {}).get("level", "INFO"),
        # Per-handler levels: strings INFO|DEBUG|WARNING|ERROR|CRITICAL|NONE
        # Backward-compatible: if console/to_file are bools, map True->level, False->NONE
        "logging_console": None,
        "logging_file": None,
        "logging_file_path": t.get("logging", {}).get("file_path", "logs/emx_importer.jsonl"),
        "logging_max_bytes": t.get("logging", {}).get("max_bytes", 5_000_000),
        "logging_backup_count": t.get("logging", {}).get("backup_count", 5),
    }

    db_cfg = t.get("database", {}) or {}
    if db_cfg.get("url"):
        out["database_url"] = db_cfg["url"]

    log_cfg = t.get("logging", {}) or {}
    # Derive per-handler levels if provided as strings; otherwise fallback from booleans
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

    # Only set legacy booleans if TOML provided booleans to avoid validation errors
    if isinstance(console_val, bool):
        out["logging_to_console"] = console_val
    if isinstance(file_val, bool):
        out["logging_to_file"] = file_val

    # Importer
    # Example TOML:
    # [importer]
    # hugeset_spill_threshold = 100000
    # hugeset_tmp_dir = "/var/tmp/emx"
    # default_action = "ADD_UPDATE_EXISTING"
    importer_cfg = t.get("importer", {}) or {}
    if "hugeset_spill_threshold" in importer_cfg:
        out["importer_hugeset_spill_threshold"] = int(importer_cfg["hugeset_spill_threshold"])
    if importer_cfg.get("hugeset_tmp_dir"):
        out["importer_hugeset_tmp_dir"] = importer_cfg["hugeset_tmp_dir"]
    if importer_cfg.get("default_action"):
        out["importer_default_action"] = str(importer_cfg["default_action"]).upper()

    return out


class Settings(BaseSettings):
    env: str = Field(default="dev")
    database_url: str = Field(default="sqlite+aiosqlite:///./emx_importer.sqlite3")

    # --- Importer ---
    importer_hugeset_spill_threshold: int = Field(
        default=100_000,
        ge=0,
        description="Number of ids kept in memory before a HugeSet spills to disk.",
    )
    importer_hugeset_tmp_dir: str | None = None
    importer_default_action: Literal["ADD", "ADD_UPDATE_EXISTING", "UPDATE"] = "ADD_UPDATE_EXISTING"

    # --- Logging ---
    logging_enabled: bool = True
    logging_level: str = "INFO"
    logging_console: str = "INFO"
    logging_file: str = "INFO"
    logging_to_console: bool = True
    logging_to_file: bool = True
    logging_file_path: str = "logs/emx_importer.jsonl"
    logging_max_bytes: int = 5_000_000
    logging_backup_count: int = 5

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore", # Safely ignore any extra env vars
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
        # 2) dotenv (.env in cwd): developer-local overrides
        # 3) env_settings (OS env)
        # 4) TOML (repo config.toml): project defaults
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
