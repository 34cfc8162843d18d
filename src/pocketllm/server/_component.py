# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Base class for pieces the Server composes into one application."""

import abc

from fastapi import APIRouter


class Component(abc.ABC):
    """Something with routes and an async start/stop lifecycle."""

    @abc.abstractmethod
    def router(self) -> APIRouter: ...

    @abc.abstractmethod
    async def start(self) -> None:
        """Acquire resources; called once from the app lifespan."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Release resources; called in reverse start order on shutdown."""
