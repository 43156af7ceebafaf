from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from nixpackpy.errors import ValidationError


class InEvent(Enum):
    GET_FILES = "getFiles"
    DIFF_LINE = "diffLine"
    RUN = "run"
    INPUT = "input"
    STOP = "stop"
    RENAME_FILE = "renameFile"
    DELETE_FILE = "deleteFile"
    DUPLICATE_FILE = "duplicateFile"
    CURSOR_MOVE = "cursorMove"
    INPUT_CHANGE = "inputChange"


class OutEvent(Enum):
    CONNECTED = "connected"
    FILES = "files"
    OUTPUT = "output"
    EXIT = "exit"
    RUN_STATUS = "runStatus"
    RUN_RAN = "runRan"
    STOPPED = "stopped"
    LINE_UPDATED = "lineUpdated"
    MOVED_CURSOR = "movedCursor"
    DELETE_CURSOR = "deleteCursor"
    INPUT_CHANGED = "inputChanged"
    RENAME_FILE_STATUS = "renameFileStatus"
    DELETE_FILE_STATUS = "deleteFileStatus"
    DUPLICATE_FILE_STATUS = "duplicateFileStatus"
    ERROR = "error"


@dataclass
class Message:
    event: OutEvent
    data: dict = field(default_factory=dict)

    @classmethod
    def new(cls, event: OutEvent, data: dict | None = None) -> Message:
        return cls(event=event, data=dict(data or {}))

    @classmethod
    def error(cls, message: str, details: str | None = None) -> Message:
        data: dict[str, Any] = {"message": message}
        if details is not None:
            data["details"] = details
        return cls(event=OutEvent.ERROR, data=data)

    def to_dict(self) -> dict:
        return {"event": self.event.value, "data": self.data}


class InvalidJson(Exception):
    pass


def parse_envelope(raw: str | bytes) -> tuple[str, dict[str, Any]]:
    """Split a raw frame into (event, data).

    Raises InvalidJson for undecodable frames and ValidationError for frames
    that are not an {event, data} object.
    """
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidJson(str(exc)) from exc

    if not isinstance(msg, dict):
        raise ValidationError("message must be a JSON object")
    event = msg.get("event")
    if not isinstance(event, str) or not event:
        raise ValidationError("event is required")
    data = msg.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object")
    return event, data


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _env_field(**kwargs: Any) -> Any:
    return Field(alias="environmentId", min_length=1, strict=True, **kwargs)


def _name_field(alias: str) -> Any:
    return Field(alias=alias, min_length=1, strict=True)


class GetFilesData(_Payload):
    environment_id: str = _env_field()


class DiffLineData(_Payload):
    environment_id: str = _env_field()
    file_name: str = _name_field("fileName")
    op: Literal["insert", "delete", "replace"]
    line_number: int = Field(alias="lineNumber", strict=True, ge=0)
    line_content: str | list[str] | None = Field(default=None, alias="lineContent")
    count: Any = None


class RunData(_Payload):
    environment_id: str = _env_field()
    file_names: list[str] = Field(alias="fileNames", min_length=1)
    client_hash: str | None = Field(default=None, alias="hash")
    # Shape is checked by the session manager; unusable files fall back to the store.
    client_files: Any = Field(default=None, alias="files")


class InputData(_Payload):
    input: str = Field(strict=True)


class RenameFileData(_Payload):
    environment_id: str = _env_field()
    old_name: str = _name_field("oldName")
    new_name: str = _name_field("newName")


class FileNameData(_Payload):
    environment_id: str = _env_field()
    file_name: str = _name_field("fileName")


class CursorMoveData(_Payload):
    environment_id: str | None = Field(default=None, alias="environmentId")
    line: Any = None
    ch: Any = None
    file: Any = None


class InputChangeData(_Payload):
    input: Any = None


P = TypeVar("P", bound=_Payload)


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "data"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_payload(model: type[P], data: dict[str, Any]) -> P:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc
