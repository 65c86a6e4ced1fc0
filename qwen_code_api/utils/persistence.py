from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
from typing import Any
from uuid import uuid4

FILE_MODE = 0o600
DIRECTORY_MODE = 0o700


class JsonFileStore:
    """JSON persistence helper with owner-only atomic writes."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read_text(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def write(self, payload: Any) -> None:
        serialized = json.dumps(payload, indent=2) + "\n"
        self.write_text(serialized)

    def write_text(self, text: str) -> None:
        self.path.parent.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)
        temp_path = self._temp_path()
        try:
            fd = os.open(
                temp_path,
                os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                FILE_MODE,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")
