"""
Utility Functions Module

Common helpers used across the session handler:
- Logging setup
- Typed YAML configuration
- Identifier generation
"""

from .logging import setup_logger, configure_root_logging
from .config import AppConfig, load_config
from .identifiers import generate_read_id

__all__ = [
    "setup_logger",
    "configure_root_logging",
    "AppConfig",
    "load_config",
    "generate_read_id",
]
