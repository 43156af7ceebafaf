"""Line-level edits on shared file contents.

Edits are applied to the server copy of a file and turned into a stream of
single-line updates. Replaying that stream against another copy of the
original content (see replay_updates) yields the same result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from nixpackpy.errors import ValidationError
from nixpackpy.locks import KeyedLocks

if TYPE_CHECKING:  # pragma: no cover
    from nixpackpy.files.store import FileStore

logger = logging.getLogger(__name__)

EditOp = Literal["insert", "delete", "replace"]
EDIT_OPS: tuple[str, ...] = ("insert", "delete", "replace")


@dataclass(frozen=True)
class LineEdit:
    op: EditOp
    line_number: int
    line_content: tuple[str, ...] = ()
    count: int = 1

    @classmethod
    def build(
        cls,
        *,
        op: str,
        line_number: int,
        line_content: str | list[str] | tuple[str, ...] | None = None,
        count: Any = None,
    ) -> LineEdit:
        if op not in EDIT_OPS:
            raise ValidationError(f"op must be one of {', '.join(EDIT_OPS)}")
        if isinstance(line_number, bool) or not isinstance(line_number, int):
            raise ValidationError("lineNumber must be an integer")
        if line_number < 0:
            raise ValidationError("lineNumber must be >= 0")

        if op == "delete":
            n = count if isinstance(count, int) and not isinstance(count, bool) else 1
            return cls(op="delete", line_number=line_number, count=n if n > 0 else 1)

        if line_content is None:
            raise ValidationError(f"lineContent is required for {op}")
        values = (
            (line_content,)
            if isinstance(line_content, str)
            else tuple(line_content)
        )
        if not all(isinstance(v, str) for v in values):
            raise ValidationError("lineContent must be a string or a list of strings")
        return cls(op=op, line_number=line_number, line_content=values)  # type: ignore[arg-type]


@dataclass(frozen=True)
class LineUpdate:
    file_name: str
    op: EditOp
    line_number: int
    line_content: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "op": self.op,
            "lineNumber": self.line_number,
            "lineContent": self.line_content,
        }


def apply_line_edit(
    content: str, edit: LineEdit, *, file_name: str = ""
) -> tuple[str, list[LineUpdate]]:
    lines = content.split("\n")
    updates: list[LineUpdate] = []
    n = edit.line_number

    if edit.op == "insert":
        lines[n:n] = list(edit.line_content)
        for i, value in enumerate(edit.line_content):
            updates.append(LineUpdate(file_name, "insert", n + i, value))

    elif edit.op == "delete":
        removed = len(lines[n : n + edit.count])
        del lines[n : n + edit.count]
        # Each delete shifts later lines up, so every update targets index n.
        updates.extend(LineUpdate(file_name, "delete", n, None) for _ in range(removed))

    else:
        for i, value in enumerate(edit.line_content):
            idx = n + i
            if idx < len(lines):
                lines[idx] = value
                updates.append(LineUpdate(file_name, "replace", idx, value))
            else:
                lines.insert(idx, value)
                updates.append(LineUpdate(file_name, "insert", idx, value))

    return "\n".join(lines), updates


def replay_updates(content: str, updates: list[LineUpdate] | list[dict[str, Any]]) -> str:
    """Apply a stream of single-line updates, as a receiving client would."""
    lines = content.split("\n")
    for u in updates:
        if isinstance(u, dict):
            op, idx, value = u["op"], u["lineNumber"], u.get("lineContent")
        else:
            op, idx, value = u.op, u.line_number, u.line_content
        if op == "insert":
            lines.insert(idx, value or "")
        elif op == "delete":
            del lines[idx : idx + 1]
        elif op == "replace":
            lines[idx] = value or ""
        else:
            raise ValueError(f"unknown update op: {op!r}")
    return "\n".join(lines)


class EditEngine:
    """Applies LineEdits to stored files.

    Each read-modify-write on a file runs under a per-(environment, file) lock;
    without it two edits interleaving at the store read would lose one write.
    """

    def __init__(self, store: FileStore) -> None:
        self._store = store
        self._locks = KeyedLocks()

    async def apply(
        self, environment_id: str, file_name: str, edit: LineEdit
    ) -> list[LineUpdate]:
        async with self._locks.hold((environment_id, file_name)):
            current = await self._store.read(environment_id, file_name) or ""
            new_content, updates = apply_line_edit(current, edit, file_name=file_name)
            await self._store.write(environment_id, file_name, new_content)
        logger.debug(
            "Applied %s at line %d to %s (environment=%s, updates=%d)",
            edit.op,
            edit.line_number,
            file_name,
            environment_id,
            len(updates),
        )
        return updates
