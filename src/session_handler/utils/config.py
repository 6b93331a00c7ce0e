"""
Configuration management for session-handler.

Provides a typed pydantic model and YAML loader with sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Literal, List, Any, Dict

from pydantic import BaseModel, Field, ValidationError
import yaml


# -----------------------
# Typed config structures
# -----------------------


class DispatcherConfig(BaseModel):
    n_workers: Optional[int] = Field(
        default=None,
        description="Number of background worker threads (None = auto-detect: cpu_count - 1)",
    )


class ReadConfig(BaseModel):
    chunk_size: int = Field(default=65536, gt=0, description="Points pulled from the engine per chunk")
    id_size: int = Field(default=24, gt=0, description="Length of generated read identifiers (hex characters)")


class EngineConfig(BaseModel):
    fill_depth: int = Field(default=8, ge=0, description="Deepest quadtree level reported by fill counts")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    file: Optional[str] = Field(default=None)


class ServerConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8081)
    serial_paths: List[str] = Field(
        default_factory=list,
        description="Directories searched for, and used to write, serialized pipelines",
    )


class AppConfig(BaseModel):
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    read: ReadConfig = Field(default_factory=ReadConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


# -----------------------
# Loader
# -----------------------


def _project_root() -> Path:
    """
    Resolve the repository root directory.

    File is at: repo_root/src/session_handler/utils/config.py
    parents sequence:
      0 -> .../src/session_handler/utils
      1 -> .../src/session_handler
      2 -> .../src
      3 -> repo_root
    """
    return Path(__file__).resolve().parents[3]


def load_config(path: Optional[str | Path] = None, *, allow_missing: bool = True) -> AppConfig:
    """
    Load configuration from YAML into a typed AppConfig.

    Search order when path is None:
    1) repo_root/config/default.yaml
    2) if missing and allow_missing=True: return default AppConfig()

    Args:
        path: Explicit YAML file path.
        allow_missing: If True, returns defaults when file missing; otherwise raises.

    Returns:
        AppConfig instance
    """
    cfg_path: Path
    if path is None:
        cfg_path = _project_root() / "config" / "default.yaml"
    else:
        cfg_path = Path(path)

    if not cfg_path.exists():
        if allow_missing:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {cfg_path}: {e}")
