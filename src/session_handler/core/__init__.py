"""
Core Module

Asynchronous command dispatch and read tracking:
- RasterMeta / RasterGrid for rasterized reads
- ReadCommand / RasteredReadCommand and their validating factory
- CommandRegistry of in-flight reads
- Session lifecycle and queries
- TaskDispatcher for background work
- SessionBindings, the operations exposed to callers
"""

from .raster import RasterGrid, RasterMeta
from .registry import CommandRegistry
from .dispatcher import TaskDispatcher, TaskResult, describe_error
from .session import Session, SessionState
from .commands import (
    CommandState,
    RasteredReadCommand,
    ReadCommand,
    ReadParams,
    create_read_command,
)
from .bindings import SessionBindings, parse_path_list

__all__ = [
    "RasterGrid",
    "RasterMeta",
    "CommandRegistry",
    "TaskDispatcher",
    "TaskResult",
    "describe_error",
    "Session",
    "SessionState",
    "CommandState",
    "RasteredReadCommand",
    "ReadCommand",
    "ReadParams",
    "create_read_command",
    "SessionBindings",
    "parse_path_list",
]
