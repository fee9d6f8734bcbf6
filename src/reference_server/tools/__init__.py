"""
Built-in Tools Package

Tools every reference server instance registers at startup.
"""

from .ping_tool import PingTool

__all__ = [
    "PingTool",
]
