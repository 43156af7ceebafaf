from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ClientHandle(Protocol):
    """One live connection as seen by the registry."""

    session_id: str
    environment_id: str | None

    @property
    def is_open(self) -> bool: ...

    async def send(self, message: dict[str, Any]) -> None: ...


class ClientRegistry:
    """Maps environment_id -> set of connected clients.

    The registry tracks clients but never closes their transports; a client's
    own disconnect handler is responsible for calling unregister().
    """

    def __init__(
        self, *, on_empty: Callable[[str], Awaitable[Any]] | None = None
    ) -> None:
        self._clients_by_env: dict[str, set[ClientHandle]] = {}
        self._on_empty = on_empty

    def set_on_empty(self, hook: Callable[[str], Awaitable[Any]] | None) -> None:
        self._on_empty = hook

    def register(self, environment_id: str, client: ClientHandle) -> None:
        self._clients_by_env.setdefault(environment_id, set()).add(client)

    async def unregister(self, environment_id: str, client: ClientHandle) -> None:
        clients = self._clients_by_env.get(environment_id)
        if clients is None:
            return
        clients.discard(client)
        if clients:
            return

        # Last observer left: drop the entry before tearing the session down so
        # a concurrent register() starts from a fresh set.
        self._clients_by_env.pop(environment_id, None)
        if self._on_empty is not None:
            logger.info("Last client left environment %s; tearing down", environment_id)
            await self._on_empty(environment_id)

    def clients(self, environment_id: str) -> list[ClientHandle]:
        return list(self._clients_by_env.get(environment_id, ()))

    def environments(self) -> list[str]:
        return list(self._clients_by_env.keys())

    def is_registered(self, environment_id: str, client: ClientHandle) -> bool:
        return client in self._clients_by_env.get(environment_id, ())

    async def broadcast(
        self,
        environment_id: str,
        message: dict[str, Any],
        *,
        exclude: ClientHandle | None = None,
    ) -> None:
        targets = [
            c
            for c in self._clients_by_env.get(environment_id, ())
            if c is not exclude and c.is_open
        ]
        if not targets:
            return
        results = await asyncio.gather(
            *(c.send(message) for c in targets), return_exceptions=True
        )
        for client, res in zip(targets, results):
            if isinstance(res, BaseException):
                # The client's disconnect handler will unregister it.
                logger.debug(
                    "Dropped %s for client %s (environment=%s): %s",
                    message.get("event"),
                    getattr(client, "session_id", None),
                    environment_id,
                    res,
                )
