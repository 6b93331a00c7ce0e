"""
Registry of in-flight read commands.

Several reads may be outstanding against one session. The registry tracks
each by identifier from registration until its results have been delivered.
The lock is held only for the dictionary mutation itself, never across
engine work, dispatch or callbacks.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from ..exceptions import RegistryError
from ..utils.logging import setup_logger

if TYPE_CHECKING:
    from .commands import ReadCommand

logger = setup_logger(__name__)


class CommandRegistry:
    """Lock-guarded mapping from read identifier to in-flight command."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._commands: Dict[str, "ReadCommand"] = {}

    def insert(self, read_id: str, command: "ReadCommand") -> None:
        """
        Track a command under ``read_id``.

        Raises:
            RegistryError: If ``read_id`` is already tracked
        """
        with self._lock:
            if read_id in self._commands:
                raise RegistryError(f"Read id {read_id} is already registered")
            self._commands[read_id] = command
            outstanding = len(self._commands)
        logger.debug(f"Registered read {read_id} ({outstanding} outstanding)")

    def remove(self, read_id: str) -> Optional["ReadCommand"]:
        """Stop tracking ``read_id``. Removing an unknown id is a no-op."""
        with self._lock:
            command = self._commands.pop(read_id, None)
            outstanding = len(self._commands)
        if command is not None:
            logger.debug(f"Removed read {read_id} ({outstanding} outstanding)")
        return command

    def get(self, read_id: str) -> Optional["ReadCommand"]:
        with self._lock:
            return self._commands.get(read_id)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._commands)

    def __contains__(self, read_id: object) -> bool:
        with self._lock:
            return read_id in self._commands

    def __len__(self) -> int:
        with self._lock:
            return len(self._commands)
