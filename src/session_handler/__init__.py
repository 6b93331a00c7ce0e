"""
Session Handler Package

A session-oriented façade over a point-cloud engine. A session is initialized
from a pipeline description, then serves raw or rasterized point reads and
metadata queries. Long operations run on a background worker pool and report
back through callbacks on the caller's event loop.
"""

__version__ = "0.1.0"

from .exceptions import *
from .engine import *
from .core import *
from .utils import *

__all__ = [
    "engine",
    "core",
    "utils",
    "server",
]
