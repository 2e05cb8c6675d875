from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict

from shared.logging.logger import get_logger

log = get_logger("relay.snapshot", runtime="relay")


class RelaySnapshotWriter:
    """
    Atomic JSON snapshot writer for relay runtime state.

    The payload is produced by a callable so the writer can be driven by a
    supervisor timer without knowing about the queue or the supervisor.
    """

    def __init__(self, path: Path, source: Callable[[], Dict[str, Any]]):
        self._path = Path(path)
        self._source = source

    @property
    def path(self) -> Path:
        return self._path

    def write(self) -> bool:
        """
        Persist a snapshot atomically to avoid partial reads by consumers.
        """
        payload = dict(self._source())
        payload["generated_at"] = datetime.now(timezone.utc).isoformat()

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            serialized = json.dumps(payload, indent=2, default=str)
            with tempfile.NamedTemporaryFile(
                "w", dir=self._path.parent, delete=False, encoding="utf-8"
            ) as tmp:
                tmp.write(serialized)
                tmp.flush()
                os.fsync(tmp.fileno())
                temp_path = Path(tmp.name)

            temp_path.replace(self._path)
        except OSError as e:
            log.error(f"Failed to write relay snapshot to {self._path}: {e}")
            return False

        return True
