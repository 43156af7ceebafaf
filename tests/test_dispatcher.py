from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from fakes import FakeBackend, FakeClient

from nixpackpy.collab.edits import EditEngine
from nixpackpy.collab.registry import ClientRegistry
from nixpackpy.files.store import FileStore, InMemoryKeyValueStore
from nixpackpy.runtimes.dispatcher import ProtocolDispatcher
from nixpackpy.sessions.manager import SessionManager, content_hash


class Harness:
    def __init__(self, tmp_path: Path, files: dict[str, str] | None = None) -> None:
        self.kv = InMemoryKeyValueStore(dict(files or {}))
        self.store = FileStore(self.kv)
        self.registry = ClientRegistry()
        self.backend = FakeBackend()
        self.sessions = SessionManager(
            store=self.store,
            registry=self.registry,
            backend=self.backend,
            work_root=str(tmp_path / "work"),
        )
        self.registry.set_on_empty(self.sessions.stop)
        self.dispatcher = ProtocolDispatcher(
            registry=self.registry,
            sessions=self.sessions,
            store=self.store,
            edits=EditEngine(self.store),
        )

    def send(self, client: FakeClient, event: str | None, data: dict | None = None, raw: str | None = None) -> None:
        frame = raw if raw is not None else json.dumps({"event": event, "data": data or {}})
        asyncio.run(self.dispatcher.dispatch(client, frame))

    def join(self, client: FakeClient, env: str = "env") -> None:
        self.send(client, "getFiles", {"environmentId": env})


@pytest.fixture
def h(tmp_path: Path) -> Harness:
    return Harness(tmp_path, {"env_main.py": "a\nb\nc", "other_x.py": "x"})


def test_invalid_json_yields_error(h: Harness) -> None:
    c = FakeClient()
    h.send(c, None, raw="{not json")
    assert c.events() == ["error"]
    assert c.sent[0]["data"]["message"] == "Invalid JSON"
    assert "details" in c.sent[0]["data"]


def test_unknown_event_errors_without_state_change(h: Harness) -> None:
    c = FakeClient()
    before = dict(h.kv._d)
    h.send(c, "explode", {"environmentId": "env"})
    assert c.of("error") == [
        {"message": "Error processing request", "details": "Unknown event: explode"}
    ]
    assert h.kv._d == before
    assert h.registry.environments() == []
    assert h.sessions.active_environments() == []


def test_get_files_registers_and_returns_listing(h: Harness) -> None:
    c = FakeClient()
    h.join(c)
    assert c.environment_id == "env"
    assert h.registry.is_registered("env", c)
    assert c.of("files") == [{"files": {"main.py": "a\nb\nc"}}]


def test_get_files_requires_environment(h: Harness) -> None:
    c = FakeClient()
    h.send(c, "getFiles", {})
    assert c.events() == ["error"]
    assert "environmentId" in c.sent[0]["data"]["details"]
    assert h.registry.environments() == []


def test_diff_line_persists_and_notifies_others_only(h: Harness) -> None:
    a, b = FakeClient("a"), FakeClient("b")
    h.join(a)
    h.join(b)
    a.sent.clear()
    b.sent.clear()

    h.send(
        a,
        "diffLine",
        {"environmentId": "env", "fileName": "main.py", "op": "delete", "lineNumber": 0, "count": 2},
    )

    assert h.kv._d["env_main.py"] == "c"
    assert a.sent == []
    assert b.of("lineUpdated") == [
        {"fileName": "main.py", "op": "delete", "lineNumber": 0, "lineContent": None},
        {"fileName": "main.py", "op": "delete", "lineNumber": 0, "lineContent": None},
    ]


@pytest.mark.parametrize(
    "data",
    [
        {"environmentId": "env", "fileName": "main.py", "op": "insert"},
        {"environmentId": "env", "fileName": "main.py", "op": "nope", "lineNumber": 0},
        {"environmentId": "env", "fileName": "main.py", "op": "insert", "lineNumber": "1", "lineContent": "x"},
        {"environmentId": "env", "fileName": "main.py", "op": "insert", "lineNumber": 0},
        {"fileName": "main.py", "op": "insert", "lineNumber": 0, "lineContent": "x"},
    ],
)
def test_diff_line_validation_has_no_side_effects(h: Harness, data: dict) -> None:
    c = FakeClient()
    h.send(c, "diffLine", data)
    assert c.events() == ["error"]
    assert h.kv._d["env_main.py"] == "a\nb\nc"


def test_run_binds_notifies_and_reports_status(h: Harness) -> None:
    runner, watcher = FakeClient("runner"), FakeClient("watcher")
    h.join(watcher)
    watcher.sent.clear()
    files = {"main.py": "a\nb\nc"}

    h.send(
        runner,
        "run",
        {"environmentId": "env", "fileNames": ["main.py"], "hash": content_hash(files), "files": files},
    )

    assert runner.environment_id == "env"
    assert h.registry.is_registered("env", runner)
    assert runner.of("runStatus") == [{"success": True}]
    assert watcher.events() == ["runRan"]
    assert h.backend.last.files == files


def test_run_requires_file_names(h: Harness) -> None:
    c = FakeClient()
    h.send(c, "run", {"environmentId": "env", "fileNames": "main.py"})
    h.send(c, "run", {"environmentId": "env", "fileNames": []})
    assert c.events() == ["error", "error"]
    assert h.backend.spawned == []


def test_input_and_stop_need_a_bound_environment(h: Harness) -> None:
    c = FakeClient()
    h.send(c, "input", {"input": "hi"})
    h.send(c, "stop")
    h.send(c, "inputChange", {"input": "hi"})
    assert [d["details"] for d in c.of("error")] == ["No active environment"] * 3


def test_input_reaches_running_session(h: Harness) -> None:
    c = FakeClient()
    h.send(c, "run", {"environmentId": "env", "fileNames": ["main.py"]})
    h.send(c, "input", {"input": "Alex"})
    assert h.backend.last.process.written == [b"Alex\n"]


def test_input_without_session_fails(h: Harness) -> None:
    c = FakeClient()
    h.join(c)
    h.send(c, "input", {"input": "Alex"})
    assert c.of("error")[0]["details"] == "Failed to send input"


def test_stop_broadcasts_to_environment(h: Harness) -> None:
    a, b = FakeClient("a"), FakeClient("b")
    h.join(b)
    h.send(a, "run", {"environmentId": "env", "fileNames": ["main.py"]})
    h.send(a, "stop")

    expected = {"environmentId": "env", "success": True}
    assert a.of("stopped") == [expected]
    assert b.of("stopped") == [expected]
    assert h.backend.last.process.killed is True


def test_rename_file_replies_and_broadcasts_listing(h: Harness) -> None:
    a, b = FakeClient("a"), FakeClient("b")
    h.join(a)
    h.join(b)
    h.send(a, "renameFile", {"environmentId": "env", "oldName": "main.py", "newName": "app.py"})

    assert a.of("renameFileStatus") == [{"success": True, "oldName": "main.py", "newName": "app.py"}]
    assert b.of("files")[-1] == {"files": {"app.py": "a\nb\nc"}}
    assert "renameFileStatus" not in b.events()


def test_rename_missing_file_is_reported_to_sender_only(h: Harness) -> None:
    a, b = FakeClient("a"), FakeClient("b")
    h.join(a)
    h.join(b)
    b.sent.clear()
    h.send(a, "renameFile", {"environmentId": "env", "oldName": "ghost.py", "newName": "x.py"})
    assert a.of("error")[0]["details"] == "File does not exist"
    assert b.sent == []


def test_delete_and_duplicate_file(h: Harness) -> None:
    c = FakeClient()
    h.join(c)
    h.send(c, "duplicateFile", {"environmentId": "env", "fileName": "main.py"})
    assert c.of("duplicateFileStatus") == [{"success": True, "oldName": "main.py", "newName": "main_copy.py"}]
    h.send(c, "deleteFile", {"environmentId": "env", "fileName": "main.py"})
    assert c.of("deleteFileStatus") == [{"success": True, "fileName": "main.py"}]
    assert c.of("files")[-1] == {"files": {"main_copy.py": "a\nb\nc"}}


def test_cursor_move_and_input_change_reach_other_clients(h: Harness) -> None:
    a, b = FakeClient("a"), FakeClient("b")
    h.join(b)
    h.send(a, "cursorMove", {"environmentId": "env", "line": 3, "ch": 7, "file": "main.py"})
    h.send(a, "inputChange", {"input": "Al"})

    assert b.of("movedCursor") == [{"id": "a", "pos": {"line": 3, "ch": 7}, "file": "main.py"}]
    assert b.of("inputChanged") == [{"input": "Al"}]
    assert a.sent == []


def test_rebinding_unregisters_from_previous_environment(h: Harness) -> None:
    c = FakeClient()
    h.send(c, "run", {"environmentId": "env", "fileNames": ["main.py"]})
    first = h.backend.last.process

    h.join(c, "other")

    assert not h.registry.is_registered("env", c)
    assert h.registry.is_registered("other", c)
    # It was the only observer of "env", so that run was torn down.
    assert first.killed is True


def test_disconnect_tears_down_and_notifies_remaining(h: Harness) -> None:
    a, b = FakeClient("a"), FakeClient("b")
    h.join(a)
    h.join(b)
    h.send(a, "run", {"environmentId": "env", "fileNames": ["main.py"]})

    asyncio.run(h.dispatcher.disconnect(a))
    assert b.of("deleteCursor") == [{"sessionId": "a"}]
    assert h.backend.last.process.killed is False

    asyncio.run(h.dispatcher.disconnect(b))
    assert h.backend.last.process.killed is True
    assert h.registry.environments() == []


def test_handler_crash_is_isolated(h: Harness, monkeypatch: pytest.MonkeyPatch) -> None:
    async def boom(environment_id: str):
        raise RuntimeError("store down")

    monkeypatch.setattr(h.store, "list_files", boom)
    a, b = FakeClient("a"), FakeClient("b")
    h.send(a, "getFiles", {"environmentId": "env"})
    assert a.of("error") == [{"message": "Error processing request", "details": "store down"}]
    assert b.sent == []


def test_run_with_malformed_client_files_falls_back_to_store(h: Harness) -> None:
    c = FakeClient()
    h.send(
        c,
        "run",
        {
            "environmentId": "env",
            "fileNames": ["main.py"],
            "hash": "stale",
            "files": {"main.py": None},
        },
    )

    assert c.of("runStatus") == [{"success": True}]
    assert "error" not in c.events()
    assert h.backend.last.files == {"main.py": "a\nb\nc"}
