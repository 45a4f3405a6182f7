"""
Local session snapshot, so an interrupted session resumes after a restart.

The snapshot lives in a small JSON file under one fixed key. It is
separate from the Firestore library: the library is the cross-device record
of courses, the snapshot is "where was I" for this machine.
"""

import json
import os
import tempfile
from typing import Optional, Dict, Any

from .errors import StorageError
from .logger import logger
from .models import AppState

STORAGE_KEY = "cognipath_state_v5"
TEMP_PREFIX = ".cognipath_"


class SnapshotStore:
    """JSON file holding ``{STORAGE_KEY: <AppState dict>}``."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def _read_all(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Could not read {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def save(self, state: AppState) -> None:
        """Write the snapshot atomically. Raises StorageError on failure."""
        payload = json.dumps({STORAGE_KEY: state.to_dict()}, ensure_ascii=False)
        try:
            directory = os.path.dirname(self.path) or "."
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=TEMP_PREFIX, suffix=".tmp")
        except OSError as e:
            raise StorageError(f"Could not write {self.path}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path)
        except OSError as e:
            # Leave no temp file behind
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise StorageError(f"Could not write {self.path}: {e}") from e

    def load(self) -> Optional[AppState]:
        """
        The saved state merged over defaults, or None if there is none.

        A corrupt snapshot is logged and ignored.
        """
        try:
            snapshot = self._read_all().get(STORAGE_KEY)
        except StorageError as e:
            logger.db_error(f"Failed to read saved state: {e}")
            return None
        if not snapshot:
            return None
        try:
            return AppState.from_dict(snapshot)
        except (KeyError, TypeError, ValueError) as e:
            logger.db_error(f"Failed to parse saved state: {e}")
            return None

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Could not remove {self.path}: {e}") from e
