import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # Unit tests never talk to redis or docker; keep config deterministic.
    monkeypatch.setenv("NIXPACKPY_STORE", "memory")
    monkeypatch.setenv("NIXPACKPY_WORK_ROOT", str(tmp_path / "work"))
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("NIXPACKPY_AUTH_MODE", raising=False)
