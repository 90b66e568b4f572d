"""Conductor entry point.

Initializes all components and starts the server:
  Settings -> ChatClient -> ToolDispatcher (+ MCP providers) -> Runner -> App -> Uvicorn

Uses Starlette lifespan so the httpx client and MCP transports live on
the same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from conductor.api.builtin_tools import register_builtin_tools
from conductor.api.client import ChatClient
from conductor.api.mcp import connect_mcp_servers
from conductor.api.runner import AgentRunner
from conductor.api.tools import ToolDispatcher
from conductor.config import Settings

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. ChatClient - httpx connection to the model endpoint
    2. ToolDispatcher - built-in tools, then MCP providers if enabled
    3. AgentRunner - turn orchestration
    """
    client = ChatClient(settings)
    await client.start()

    dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher, settings)

    providers = []
    if settings.mcp_enabled and settings.mcp_servers:
        providers = await connect_mcp_servers(settings.mcp_servers, timeout=settings.mcp_connect_timeout)
        for provider in providers:
            dispatcher.add_provider(provider)

    runner = AgentRunner(client, dispatcher, settings)

    return {
        "client": client,
        "dispatcher": dispatcher,
        "mcp_providers": providers,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Conductor...")

    for provider in reversed(components.get("mcp_providers", [])):
        try:
            await provider.close()
        except Exception:
            logger.warning("Failed to close MCP server '%s'", provider.name, exc_info=True)

    client = components.get("client")
    if client:
        await client.close()

    logger.info("Conductor shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        logger.info(
            "Conductor started: model=%s, tools=%d, workspace=%s",
            settings.model,
            len(components["dispatcher"].tool_names()),
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    from conductor.api.rest import create_app

    return create_app(
        runner=_RunnerProxy(components),
        settings=settings,
        lifespan=lifespan,
    )


class _RunnerProxy:
    """Stands in for the AgentRunner until the lifespan has built it."""

    def __init__(self, components: dict) -> None:
        self._components = components

    def __getattr__(self, name):
        runner = self._components.get("runner")
        if runner is None:
            raise RuntimeError("AgentRunner not initialized -- lifespan hasn't started")
        return getattr(runner, name)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Conductor (model=%s, endpoint=%s)", settings.model, settings.api_base_url)
    logger.info("MCP: %s (%d servers)", "enabled" if settings.mcp_enabled else "disabled", len(settings.mcp_servers))

    if not settings.api_key:
        logger.warning("MODEL_API_KEY is not set -- /chat endpoints will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
