"""
Model Context Protocol (MCP) reference server.

A minimal stdio JSON-RPC service: reads framed requests from stdin,
dispatches them to registered tools and writes responses to stdout.
"""

__version__ = "0.1.0"
