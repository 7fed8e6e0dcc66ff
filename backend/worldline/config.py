"""基础配置与环境变量加载器，支持 .env 文件与系统环境并存."""
from __future__ import annotations

import os
from pathlib import Path

_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


def _load_env_file(path: Path = _ENV_PATH) -> None:
    """读取 .env 文件到 os.environ，不覆盖已存在的环境变量."""
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _get_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _get_choice(name: str, default: str, allowed: set[str]) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value not in allowed:
        options = "/".join(sorted(allowed))
        raise ValueError(f"{name}={raw!r} 非法：必须为 {options}。")
    return value


WORLDLINE_STORE_BACKEND: str = _get_choice(
    "WORLDLINE_STORE_BACKEND", "json", {"memory", "json", "kuzu"}
)
WORLDLINE_DATA_DIR: Path = Path(os.getenv("WORLDLINE_DATA_DIR", "data"))
WORLDLINE_RETENTION_LIMIT: int = _get_positive_int("WORLDLINE_RETENTION_LIMIT", 20)
WORLDLINE_RETENTION_SCOPE: str = _get_choice(
    "WORLDLINE_RETENTION_SCOPE", "global", {"global", "session"}
)
WORLDLINE_INLINE_ASSET_LIMIT: int = _get_positive_int(
    "WORLDLINE_INLINE_ASSET_LIMIT", 500
)

NARRATIVE_ENGINE: str = _get_choice("NARRATIVE_ENGINE", "local", {"local", "remote"})
NARRATIVE_API_KEY: str | None = os.getenv("NARRATIVE_API_KEY")
NARRATIVE_BASE_URL: str = os.getenv(
    "NARRATIVE_BASE_URL", "https://generativelanguage.googleapis.com"
)
NARRATIVE_MODEL: str = os.getenv("NARRATIVE_MODEL", "gemini-2.5-pro")
try:
    NARRATIVE_TIMEOUT_SECONDS: float = float(
        os.getenv("NARRATIVE_TIMEOUT_SECONDS", "60")
    )
except ValueError:
    NARRATIVE_TIMEOUT_SECONDS = 60.0
