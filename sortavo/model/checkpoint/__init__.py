# model/checkpoint/__init__.py
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import redis.asyncio as redis


@dataclass
class Checkpoint:
    run_id: str
    started_at: float
    updated_at: float
    total_pending_at_start: int
    approved: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    remaining_estimate: int = 0
    finished: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        return cls(
            run_id=str(d["run_id"]),
            started_at=float(d["started_at"]),
            updated_at=float(d["updated_at"]),
            total_pending_at_start=int(d["total_pending_at_start"]),
            approved=int(d.get("approved", 0)),
            failed=int(d.get("failed", 0)),
            skipped=int(d.get("skipped", 0)),
            batches=int(d.get("batches", 0)),
            remaining_estimate=int(d.get("remaining_estimate", 0)),
            finished=_as_bool(d.get("finished", False)),
        )


def _as_bool(v: Any) -> bool:
    # redis hashes hand everything back as strings
    if isinstance(v, str):
        return v in ("1", "true", "True")
    return bool(v)


from ._file import CheckpointStore as FileCheckpointStore  # noqa: E402
from ._redis import CheckpointStore as RedisCheckpointStore  # noqa: E402


# Factory keeps the entry point simple and constructor-agnostic:
def new_store(backend: str, *, path: Optional[str] = None,
              r: Optional[redis.Redis] = None):
    if backend == "redis":
        if r is None:
            raise RuntimeError("CheckpointStore(redis) requires r=redis.Redis")
        return RedisCheckpointStore(r=r)
    if backend == "file":
        if path is None:
            raise RuntimeError("CheckpointStore(file) requires path=str")
        return FileCheckpointStore(path=path)
    raise RuntimeError(f"unknown checkpoint backend {backend!r}")


__all__ = [
    "Checkpoint", "FileCheckpointStore", "RedisCheckpointStore", "new_store",
]
