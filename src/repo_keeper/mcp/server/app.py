"""
Core server implementation using FastMCP.

Besides the MCP tools, the server exposes two plain HTTP routes:
``GET /commit-hash/{version}`` and ``GET /health``.
"""

import logging
import sys
import asyncio
import click
from typing import Any, Awaitable, Callable, Dict, Optional

from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from repo_keeper.config import ServerConfig, load_config
from repo_keeper.errors import InitializationError, RepositoryError
from repo_keeper.repository import RepositoryManager

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("repo_keeper.mcp")


def configure_logging(level: str = "info") -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def create_mcp_server(
    config: ServerConfig = None, repo_manager: Optional[RepositoryManager] = None
) -> FastMCP:
    """Create and configure the MCP server instance"""
    if config is None:
        config = load_config()

    server = FastMCP(name=config.name, host=config.host, port=config.port)

    if repo_manager is None:
        repo_manager = RepositoryManager.from_config(config.repository)

    register_routes(server, repo_manager)
    register_tools(server, repo_manager)

    return server


def register_routes(mcp_server: FastMCP, repo_manager: RepositoryManager) -> None:
    """Register the plain HTTP routes."""

    @mcp_server.custom_route("/health", methods=["GET"])
    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @mcp_server.custom_route("/commit-hash", methods=["GET"])
    @mcp_server.custom_route("/commit-hash/{version:path}", methods=["GET"])
    async def commit_hash(request: Request) -> JSONResponse:
        version = request.path_params.get("version", "")

        try:
            await repo_manager.ensure_initialized()
        except InitializationError as e:
            logger.error(f"Repository initialization failed: {e}", exc_info=True)
            return JSONResponse(
                {"error": "Repository initialization failed"}, status_code=500
            )

        try:
            commit = await repo_manager.resolve_commit(version)
        except RepositoryError as e:
            logger.warning(f"Failed to get commit hash for {version!r}: {e}")
            return JSONResponse(
                {"error": "Failed to get commit hash", "details": str(e)},
                status_code=400,
            )

        return JSONResponse({"version": version, "commitHash": commit})


async def _run_tool(
    repo_manager: RepositoryManager,
    name: str,
    operation: Callable[[], Awaitable[Dict[str, Any]]],
) -> Dict[str, Any]:
    try:
        await repo_manager.ensure_initialized()
        result = await operation()
        return {"status": "success", **result}
    except RepositoryError as e:
        logger.warning(f"{name} failed: {e}")
        return {"status": "error", "error": str(e)}
    except Exception as e:
        logger.error(f"Unexpected error in {name}: {e}", exc_info=True)
        return {"status": "error", "error": f"Unexpected error: {str(e)}"}


def register_tools(mcp_server: FastMCP, repo_manager: RepositoryManager) -> None:
    """Register all MCP tools with the server."""

    @mcp_server.tool(
        name="resolve_commit",
        description="Resolve a branch name, tag or commit to the hash of its latest commit. Omit the version to use the currently checked-out branch.",
    )
    async def resolve_commit(version: str = None) -> dict:
        """
        Resolve a version to a commit hash.

        Args:
            version (str, optional): Branch, tag or commit. Defaults to the current branch

        Returns:
            dict: {"status": "success", "version": str, "commit": str}
                or {"status": "error", "error": str}

        Note:
            Results may be served from a cache for up to the configured TTL,
            so a commit made through commit_changes may not be visible yet.
        """

        async def operation():
            commit = await repo_manager.resolve_commit(version)
            return {"version": version, "commit": commit}

        return await _run_tool(repo_manager, "resolve_commit", operation)

    @mcp_server.tool(
        name="checkout_commit",
        description="Switch the managed working copy to the exact state of the given commit.",
    )
    async def checkout_commit(commit_id: str) -> dict:
        async def operation():
            await repo_manager.checkout_commit(commit_id)
            return {"commit": commit_id}

        return await _run_tool(repo_manager, "checkout_commit", operation)

    @mcp_server.tool(
        name="commit_changes",
        description="Write content to a file in the working copy (creating missing directories) and commit all pending changes.",
    )
    async def commit_changes(
        file_path: str, content: str, message: str, author: str
    ) -> dict:
        """
        Write a file and commit it.

        Args:
            file_path (str): Path relative to the working copy root
            content (str): New file content
            message (str): Commit message
            author (str): Author identity, e.g. "Jane Doe <jane@example.com>"

        Returns:
            dict: {"status": "success", "commit": str, "path": str}
                or {"status": "error", "error": str}
        """

        async def operation():
            commit = await repo_manager.commit_changes(
                file_path, content, message, author
            )
            return {"commit": commit, "path": file_path}

        return await _run_tool(repo_manager, "commit_changes", operation)

    @mcp_server.tool(
        name="current_commit",
        description="Return the hash of the commit currently checked out in the working copy.",
    )
    async def current_commit() -> dict:
        async def operation():
            return {"commit": await repo_manager.current_commit()}

        return await _run_tool(repo_manager, "current_commit", operation)


@click.command()
@click.option("--config", "config_path", default=None, help="Path to a config.yaml")
@click.option("--port", default=None, type=int, help="Port to listen on for HTTP")
@click.option(
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"]),
    default="sse",
    help="Transport type (stdio, sse or streamable-http)",
)
def main(config_path: str, port: int, transport: str) -> int:
    """Run the server with specified transport."""
    try:
        config = load_config(config_path)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    configure_logging(config.log_level)
    server = create_mcp_server(config)

    try:
        if transport == "stdio":
            asyncio.run(server.run_stdio_async())
        else:
            if port is not None:
                server.settings.port = port
            if transport == "sse":
                asyncio.run(server.run_sse_async())
            else:
                asyncio.run(server.run_streamable_http_async())
        return 0
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
