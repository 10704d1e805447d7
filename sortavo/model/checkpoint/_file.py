from __future__ import annotations
import json
import os
import tempfile
from typing import Optional

from . import Checkpoint


class CheckpointStore:
    def __init__(self, path: str) -> None:
        self.path = path

    async def load(self) -> Optional[Checkpoint]:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        return Checkpoint.from_dict(data)

    async def save(self, cp: Checkpoint) -> None:
        # write-then-rename so an interrupted save never leaves half a file
        d = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(prefix=".checkpoint-", dir=d)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(cp.to_dict(), f, separators=(",", ":"))
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def clear(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    async def close(self) -> None:
        pass
