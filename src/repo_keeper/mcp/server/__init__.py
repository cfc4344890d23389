"""
Network surface of the repo-keeper service.
"""

from .app import create_mcp_server, main

__all__ = ["create_mcp_server", "main"]
