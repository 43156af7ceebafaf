from __future__ import annotations

import os
import tempfile


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def redis_url() -> str:
    return (os.environ.get("REDIS_URL") or "redis://localhost:6379").strip()


def store_backend() -> str:
    """Key-value backend for file contents: "redis" (default) or "memory"."""
    v = (os.environ.get("NIXPACKPY_STORE") or "redis").strip().lower()
    return v if v in ("redis", "memory") else "redis"


def auth_mode() -> str:
    # "jwt" unless explicitly disabled for local development.
    mode = (os.environ.get("NIXPACKPY_AUTH_MODE") or "jwt").strip().lower()
    return mode or "jwt"


def jwt_secret() -> str:
    return (os.environ.get("JWT_SECRET") or "").strip()


def work_root() -> str:
    return (
        os.environ.get("NIXPACKPY_WORK_ROOT")
        or os.path.join(tempfile.gettempdir(), "nixpackpy")
    ).strip()


def sandbox_image() -> str:
    return (
        os.environ.get("NIXPACKPY_SANDBOX_IMAGE") or "python:3.9-slim"
    ).strip() or "python:3.9-slim"


def sandbox_memory() -> str:
    return (os.environ.get("NIXPACKPY_SANDBOX_MEMORY") or "256m").strip() or "256m"


def sandbox_cpus() -> str:
    return (os.environ.get("NIXPACKPY_SANDBOX_CPUS") or "0.5").strip() or "0.5"


def sandbox_network_disabled() -> bool:
    return _env_bool("NIXPACKPY_SANDBOX_NO_NETWORK", default=True)


def docker_bin() -> str:
    return (os.environ.get("NIXPACKPY_DOCKER_BIN") or "docker").strip() or "docker"


def server_host() -> str:
    return (os.environ.get("NIXPACKPY_HOST") or "0.0.0.0").strip() or "0.0.0.0"


def server_port() -> int:
    return max(1, _env_int("NIXPACKPY_PORT", 4987))
