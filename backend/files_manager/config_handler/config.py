from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

MODULE_DIR = Path(__file__).resolve().parent
ENV_PATH = MODULE_DIR.parent / ".env"
CONFIG_PATH = MODULE_DIR.parent / "config.toml"

ENV_PATTERN = re.compile(r"\$\{env:([A-Z0-9_]+)(?:\|([^}]+))?}")


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var, default = match.group(1), match.group(2) or ""
            return os.getenv(var, default)

        return ENV_PATTERN.sub(repl, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _require(value: Optional[str], name: str) -> str:
    if value is None or value == "":
        raise ValueError(f"Missing required config value for '{name}'")
    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class StorageSettings:
    data_root: Path
    metadata_snapshots: bool = False

    @property
    def blobs_dir(self) -> Path:
        return self.data_root / "files"

    @property
    def metadata_dir(self) -> Path:
        return self.data_root / "metadata"

    @property
    def jobs_db(self) -> Path:
        return self.data_root / "jobs.db"


@dataclass
class QueueSettings:
    name: str = "files_manager"
    concurrency: int = 2
    thumbnail_timeout: int = 120
    thumbnail_retries: int = 3
    retry_delay: float = 5.0
    sweep_interval: int = 60
    shutdown_grace: int = 30
    poll_interval: float = 0.25


@dataclass
class Settings:
    storage: StorageSettings
    queue: QueueSettings
    logging_directory: Path
    log_level: str = "INFO"


def load_settings(config_path: Path = CONFIG_PATH, env_path: Optional[Path] = ENV_PATH) -> Settings:
    if env_path is not None:
        load_dotenv(env_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found at {config_path}")

    with config_path.open("rb") as f:
        raw = tomllib.load(f)
    data = _expand_env(raw)

    storage_cfg = data.get("storage", {})
    storage_settings = StorageSettings(
        data_root=Path(_require(storage_cfg.get("data_root"), "storage.data_root")).expanduser().resolve(),
        metadata_snapshots=_as_bool(storage_cfg.get("metadata_snapshots", False)),
    )

    queue_cfg = data.get("queue", {})
    defaults = QueueSettings()
    queue_settings = QueueSettings(
        name=queue_cfg.get("name") or defaults.name,
        concurrency=int(queue_cfg.get("concurrency", defaults.concurrency)),
        thumbnail_timeout=int(queue_cfg.get("thumbnail_timeout", defaults.thumbnail_timeout)),
        thumbnail_retries=int(queue_cfg.get("thumbnail_retries", defaults.thumbnail_retries)),
        retry_delay=float(queue_cfg.get("retry_delay", defaults.retry_delay)),
        sweep_interval=int(queue_cfg.get("sweep_interval", defaults.sweep_interval)),
        shutdown_grace=int(queue_cfg.get("shutdown_grace", defaults.shutdown_grace)),
        poll_interval=float(queue_cfg.get("poll_interval", defaults.poll_interval)),
    )
    if queue_settings.concurrency < 1:
        raise ValueError("queue.concurrency must be a positive integer")

    logging_cfg = data.get("logging", {})
    logging_dir_raw = logging_cfg.get("logging_directory")

    return Settings(
        storage=storage_settings,
        queue=queue_settings,
        logging_directory=Path(_require(logging_dir_raw, "logging.logging_directory")).expanduser(),
        log_level=str(logging_cfg.get("level") or "INFO").upper(),
    )


settings = load_settings()
