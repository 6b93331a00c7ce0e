"""
Identifier generation for in-flight reads and HTTP sessions.
"""

import secrets

HEX_VALUES = "0123456789ABCDEF"


def generate_read_id(size: int = 24) -> str:
    """Return a random uppercase-hex identifier of ``size`` characters."""
    return "".join(secrets.choice(HEX_VALUES) for _ in range(size))
