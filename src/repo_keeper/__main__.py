"""
Entry point for the repo-keeper server.
"""

import sys

from .mcp.server.app import main

if __name__ == "__main__":
    sys.exit(main())
