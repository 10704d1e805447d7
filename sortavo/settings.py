from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .helpers import read_env_file


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    service_key: str
    batch_size: int = 500
    max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    http_timeout: float = 30.0
    checkpoint_backend: str = "file"  # 'file' | 'redis'
    checkpoint_path: str = ".approve_orders.checkpoint.json"
    redis_url: str = "redis://localhost:6379/0"

    @property
    def rest_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1"


def _int(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        val = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if val < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {val}")
    return val


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        val = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if val < 0:
        raise ConfigError(f"{name} must not be negative, got {val}")
    return val


def load_settings(
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build Settings from the process environment, optionally layered over a
    KEY=VALUE env file. Values from the real environment win.

    Required:
      SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY
    There is no fallback for either; a missing one raises ConfigError.
    """
    env: Dict[str, str] = {}
    if env_file:
        try:
            env.update(read_env_file(env_file))
        except OSError as e:
            raise ConfigError(f"cannot read env file {env_file}: {e}")
    env.update(os.environ if environ is None else environ)

    url = env.get("SUPABASE_URL", "").strip()
    key = env.get("SUPABASE_SERVICE_ROLE_KEY", "").strip()
    missing = [
        name for name, val in (
            ("SUPABASE_URL", url),
            ("SUPABASE_SERVICE_ROLE_KEY", key),
        ) if not val
    ]
    if missing:
        raise ConfigError(f"missing required config: {', '.join(missing)}")

    backend = env.get("CHECKPOINT_BACKEND", "file").strip().lower()
    if backend not in ("file", "redis"):
        raise ConfigError(
            f"CHECKPOINT_BACKEND must be 'file' or 'redis', got {backend!r}"
        )

    return Settings(
        supabase_url=url,
        service_key=key,
        batch_size=_int(env, "BATCH_SIZE", 500, minimum=1),
        max_retries=_int(env, "MAX_RETRIES", 3, minimum=0),
        retry_base_delay=_float(env, "RETRY_BASE_DELAY", 0.5),
        retry_max_delay=_float(env, "RETRY_MAX_DELAY", 8.0),
        http_timeout=_float(env, "HTTP_TIMEOUT", 30.0),
        checkpoint_backend=backend,
        checkpoint_path=env.get(
            "CHECKPOINT_PATH", ".approve_orders.checkpoint.json"
        ),
        redis_url=env.get("REDIS_URL", "redis://localhost:6379/0"),
    )
