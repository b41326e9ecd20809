"""MCP server exposing the memory store as tools for a chat assistant."""

from __future__ import annotations

import logging

from .config import Settings
from .errors import StoreUnavailable, log_error
from .service import MemoryService
from .utils import get_logger

log = logging.getLogger("remind.server")

_UNAVAILABLE = "Something went wrong: memory is unavailable right now."


def build_server(service: MemoryService, *, error_log_dir=None):
    """Create a FastMCP app whose tools call ``service``."""
    from mcp.server.fastmcp import FastMCP

    mcp = FastMCP("remind-memory")

    @mcp.tool()
    async def search_memories(user_id: str, query: str, limit: int = 10) -> dict:
        """Search (recall) what is known about the user.

        Args:
            user_id: The user whose memories to search.
            query: Terms to look for, in web search query form.
            limit: Maximum number of results (default 10).
        """
        try:
            return {"success": True, "results": await service.recall(user_id, query, limit)}
        except StoreUnavailable as exc:
            log_error(exc, component="server", log_dir=error_log_dir)
            return {"success": False, "error": _UNAVAILABLE}

    @mcp.tool()
    async def remember(user_id: str, memory: str) -> dict:
        """Remember information about the user, merging it with what is known.

        Args:
            user_id: The user the information is about.
            memory: A sentence or short paragraph worth remembering.
        """
        try:
            return await service.remember(user_id, memory)
        except StoreUnavailable as exc:
            log_error(exc, component="server", log_dir=error_log_dir)
            return {"success": False, "error": _UNAVAILABLE}

    @mcp.tool()
    async def add_memory(user_id: str, content: str, category: str = "fact") -> dict:
        """Store one new memory without consolidation.

        Args:
            user_id: Owner of the memory.
            content: One atomic statement.
            category: fact, episode or semantic.
        """
        try:
            return await service.add(user_id, content, category)
        except StoreUnavailable as exc:
            log_error(exc, component="server", log_dir=error_log_dir)
            return {"success": False, "error": _UNAVAILABLE}

    @mcp.tool()
    async def update_memory(
        user_id: str,
        memory_id: str,
        content: str,
        edge_type: str = "replace",
        category: str = "fact",
    ) -> dict:
        """Supersede an existing memory with a new version.

        Args:
            user_id: Owner of the memory.
            memory_id: Id of the memory to supersede.
            content: The new statement.
            edge_type: replace (newer info) or extend (richer info).
            category: fact, episode or semantic.
        """
        try:
            return await service.update(user_id, memory_id, content, edge_type, category)
        except StoreUnavailable as exc:
            log_error(exc, component="server", log_dir=error_log_dir)
            return {"success": False, "error": _UNAVAILABLE}

    @mcp.tool()
    async def delete_memories(user_id: str, ids: list[str]) -> dict:
        """Retire memories that are no longer relevant.

        Args:
            user_id: Owner of the memories.
            ids: Ids of the memories to retire.
        """
        try:
            return await service.delete(user_id, ids)
        except StoreUnavailable as exc:
            log_error(exc, component="server", log_dir=error_log_dir)
            return {"success": False, "error": _UNAVAILABLE}

    return mcp


def main(settings: Settings | None = None):
    """Entry point for the MCP server process."""
    settings = settings or Settings()
    get_logger("remind", settings.log_level)
    service = MemoryService.from_settings(settings)
    log.info("Starting remind-memory MCP server (db=%s)", settings.db_path)
    build_server(service, error_log_dir=settings.error_log_dir).run()


if __name__ == "__main__":
    main()
