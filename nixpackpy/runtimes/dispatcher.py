from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from nixpackpy.collab.edits import LineEdit
from nixpackpy.errors import NixpackpyError, SandboxError, ValidationError
from nixpackpy.runtimes.protocol import (
    CursorMoveData,
    DiffLineData,
    FileNameData,
    GetFilesData,
    InEvent,
    InputChangeData,
    InputData,
    InvalidJson,
    Message,
    OutEvent,
    RenameFileData,
    RunData,
    parse_envelope,
    parse_payload,
)

if TYPE_CHECKING:  # pragma: no cover
    from nixpackpy.collab.edits import EditEngine
    from nixpackpy.collab.registry import ClientHandle, ClientRegistry
    from nixpackpy.files.store import FileStore
    from nixpackpy.sessions.manager import SessionManager

logger = logging.getLogger(__name__)

Handler = Callable[["ClientHandle", dict[str, Any]], Awaitable[None]]

PROCESSING_ERROR = "Error processing request"


class ProtocolDispatcher:
    """Interprets inbound client messages for one server process.

    Every message is handled in isolation: a failing handler produces an error
    event for its sender and leaves other clients untouched. Handlers validate
    their payload before mutating anything.
    """

    def __init__(
        self,
        *,
        registry: ClientRegistry,
        sessions: SessionManager,
        store: FileStore,
        edits: EditEngine,
    ) -> None:
        self._registry = registry
        self._sessions = sessions
        self._store = store
        self._edits = edits
        self._handlers: dict[str, Handler] = {
            InEvent.GET_FILES.value: self._on_get_files,
            InEvent.DIFF_LINE.value: self._on_diff_line,
            InEvent.RUN.value: self._on_run,
            InEvent.INPUT.value: self._on_input,
            InEvent.STOP.value: self._on_stop,
            InEvent.RENAME_FILE.value: self._on_rename_file,
            InEvent.DELETE_FILE.value: self._on_delete_file,
            InEvent.DUPLICATE_FILE.value: self._on_duplicate_file,
            InEvent.CURSOR_MOVE.value: self._on_cursor_move,
            InEvent.INPUT_CHANGE.value: self._on_input_change,
        }

    @property
    def events(self) -> list[str]:
        return list(self._handlers.keys())

    async def dispatch(self, client: ClientHandle, raw: str | bytes) -> None:
        try:
            event, data = parse_envelope(raw)
        except InvalidJson as exc:
            await self._reply(client, Message.error("Invalid JSON", str(exc)))
            return
        except ValidationError as exc:
            await self._reply(client, Message.error("Invalid message", str(exc)))
            return

        handler = self._handlers.get(event)
        try:
            if handler is None:
                raise ValidationError(f"Unknown event: {event}")
            await handler(client, data)
        except NixpackpyError as exc:
            logger.info(
                "Rejected %s from client %s: %s", event, client.session_id, exc
            )
            await self._reply(client, Message.error(PROCESSING_ERROR, str(exc)))
        except Exception as exc:
            logger.exception(
                "Handler for %s failed (client=%s environment=%s)",
                event,
                client.session_id,
                client.environment_id,
            )
            await self._reply(client, Message.error(PROCESSING_ERROR, str(exc)))

    async def disconnect(self, client: ClientHandle) -> None:
        environment_id = client.environment_id
        if not environment_id:
            return
        # Unregister first: if this was the last observer the session goes too.
        await self._registry.unregister(environment_id, client)
        await self._registry.broadcast(
            environment_id,
            Message.new(OutEvent.DELETE_CURSOR, {"sessionId": client.session_id}).to_dict(),
            exclude=client,
        )

    async def _reply(self, client: ClientHandle, msg: Message) -> None:
        if not client.is_open:
            return
        try:
            await client.send(msg.to_dict())
        except Exception as exc:
            logger.debug("Reply to client %s dropped: %s", client.session_id, exc)

    async def _bind(self, client: ClientHandle, environment_id: str) -> None:
        previous = client.environment_id
        if previous and previous != environment_id:
            # Leaving an environment counts as disconnecting from it.
            await self._registry.unregister(previous, client)
        client.environment_id = environment_id
        self._registry.register(environment_id, client)

    def _bound_environment(self, client: ClientHandle) -> str:
        if not client.environment_id:
            raise ValidationError("No active environment")
        return client.environment_id

    async def _broadcast_files(self, environment_id: str) -> None:
        files = await self._store.list_files(environment_id)
        await self._registry.broadcast(
            environment_id, Message.new(OutEvent.FILES, {"files": files}).to_dict()
        )

    async def _on_get_files(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(GetFilesData, data)
        await self._bind(client, req.environment_id)
        files = await self._store.list_files(req.environment_id)
        await self._reply(client, Message.new(OutEvent.FILES, {"files": files}))

    async def _on_diff_line(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(DiffLineData, data)
        edit = LineEdit.build(
            op=req.op,
            line_number=req.line_number,
            line_content=req.line_content,
            count=req.count,
        )
        updates = await self._edits.apply(req.environment_id, req.file_name, edit)
        for update in updates:
            await self._registry.broadcast(
                req.environment_id,
                Message.new(OutEvent.LINE_UPDATED, update.to_dict()).to_dict(),
                exclude=client,
            )

    async def _on_run(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(RunData, data)
        await self._bind(client, req.environment_id)
        await self._registry.broadcast(
            req.environment_id, Message.new(OutEvent.RUN_RAN).to_dict(), exclude=client
        )
        success = await self._sessions.start(
            req.environment_id, req.file_names, req.client_hash, req.client_files
        )
        await self._reply(client, Message.new(OutEvent.RUN_STATUS, {"success": success}))

    async def _on_input(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(InputData, data)
        environment_id = self._bound_environment(client)
        if not await self._sessions.send_input(environment_id, req.input):
            raise SandboxError("Failed to send input")

    async def _on_stop(self, client: ClientHandle, data: dict[str, Any]) -> None:
        environment_id = self._bound_environment(client)
        success = await self._sessions.stop(environment_id)
        await self._registry.broadcast(
            environment_id,
            Message.new(
                OutEvent.STOPPED, {"environmentId": environment_id, "success": success}
            ).to_dict(),
        )

    async def _on_rename_file(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(RenameFileData, data)
        await self._store.rename(req.environment_id, req.old_name, req.new_name)
        await self._reply(
            client,
            Message.new(
                OutEvent.RENAME_FILE_STATUS,
                {"success": True, "oldName": req.old_name, "newName": req.new_name},
            ),
        )
        await self._broadcast_files(req.environment_id)

    async def _on_delete_file(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(FileNameData, data)
        await self._store.remove(req.environment_id, req.file_name)
        await self._reply(
            client,
            Message.new(
                OutEvent.DELETE_FILE_STATUS, {"success": True, "fileName": req.file_name}
            ),
        )
        await self._broadcast_files(req.environment_id)

    async def _on_duplicate_file(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(FileNameData, data)
        new_name = await self._store.duplicate(req.environment_id, req.file_name)
        await self._reply(
            client,
            Message.new(
                OutEvent.DUPLICATE_FILE_STATUS,
                {"success": True, "oldName": req.file_name, "newName": new_name},
            ),
        )
        await self._broadcast_files(req.environment_id)

    async def _on_cursor_move(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(CursorMoveData, data)
        environment_id = req.environment_id or client.environment_id
        if not environment_id:
            raise ValidationError("environmentId is required for cursorMove")
        await self._bind(client, environment_id)
        await self._registry.broadcast(
            environment_id,
            Message.new(
                OutEvent.MOVED_CURSOR,
                {
                    "id": client.session_id,
                    "pos": {"line": req.line, "ch": req.ch},
                    "file": req.file,
                },
            ).to_dict(),
            exclude=client,
        )

    async def _on_input_change(self, client: ClientHandle, data: dict[str, Any]) -> None:
        req = parse_payload(InputChangeData, data)
        environment_id = self._bound_environment(client)
        await self._registry.broadcast(
            environment_id,
            Message.new(OutEvent.INPUT_CHANGED, {"input": req.input}).to_dict(),
            exclude=client,
        )
