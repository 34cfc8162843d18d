# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Builds the FastAPI application out of Components and runs it."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from ._component import Component

logger = logging.getLogger(__name__)


class Server:
    """One FastAPI app over a set of components, each type at most once.

    Usage::

        Server(LLM("models/Qwen2.5-0.5B-Instruct")).run()
    """

    def __init__(self, *components: Component):
        if not components:
            raise ValueError("Server requires at least one component")
        kinds = [type(c) for c in components]
        for kind in kinds:
            if kinds.count(kind) > 1:
                raise ValueError(f"Duplicate component type: {kind.__name__}")

        self._components = components
        self._app: FastAPI | None = None

    @property
    def app(self) -> FastAPI:
        """The FastAPI instance, built on first access."""
        if self._app is None:
            self._app = self._build_app()
        return self._app

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        started: list[Component] = []
        try:
            for component in self._components:
                await component.start()
                started.append(component)
                logger.info("Started %s", type(component).__name__)
            yield
        finally:
            # A failed start still releases what came up before it
            for component in reversed(started):
                await component.stop()
                logger.info("Stopped %s", type(component).__name__)

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="PocketLLM API", version="0.1.0", lifespan=self._lifespan)

        owners: dict[tuple[str, str], str] = {}
        for component in self._components:
            router = component.router()
            name = type(component).__name__
            for route in router.routes:
                for method in getattr(route, "methods", None) or ():
                    key = (method, route.path)
                    if key in owners:
                        raise ValueError(
                            f"{method} {route.path} is served by both {owners[key]} and {name}"
                        )
                    owners[key] = name
            app.include_router(router)
        return app

    def run(
        self,
        host: str = "127.0.0.1",
        port: int = 8000,
        log_level: str = "info",
        **kwargs,
    ) -> None:
        """Serve with uvicorn; pocketllm loggers follow *log_level*."""
        logging.basicConfig(
            level=log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        uvicorn.run(self.app, host=host, port=port, log_level=log_level, **kwargs)
