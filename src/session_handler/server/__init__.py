"""
Server Module

HTTP interface over session bindings.
"""

from .app import SessionManager, create_app

__all__ = ["SessionManager", "create_app"]
