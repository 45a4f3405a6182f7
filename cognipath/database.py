"""
Firebase Firestore persistence for the course library.

Collection structure:
- users/{user_id}/courses/{course_id} -> SavedCourse document

Without credentials the client keeps documents in an in-process cache so
the rest of the app behaves the same in demo mode (nothing survives a
restart, though).

Remote failures raise PersistenceError; deciding whether to surface them is
up to the caller.
"""

import copy
import os
from typing import Dict, List, Optional, Any, Tuple

import firebase_admin
from firebase_admin import credentials, firestore

from .errors import PersistenceError
from .logger import logger, Timer


def course_path(user_id: str, course_id: str) -> str:
    return f"users/{user_id}/courses/{course_id}"


def _merge(existing: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """set(..., merge=True) semantics: nested maps merge, everything else is replaced."""
    merged = copy.deepcopy(existing)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class DatabaseClient:
    """Firestore client for saved courses, with an in-memory fallback."""

    def __init__(self, db: Optional[Any] = None):
        self.db = db
        self._initialized = db is not None

        # (user_id, course_id) -> document, used when not connected
        self._cache: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def initialize(self, credentials_path: Optional[str] = None) -> bool:
        """
        Connect to Firestore.

        Args:
            credentials_path: Path to a Firebase service account JSON.
                              If None, uses FIREBASE_CREDENTIALS_PATH.

        Returns:
            True if connected, False if the client stays in cache mode.
        """
        logger.separator("Database Initialization")

        if self._initialized:
            logger.debug("[DB] Already initialized, skipping")
            return True

        creds_path = credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH")
        if not creds_path:
            logger.warning("[DB] FIREBASE_CREDENTIALS_PATH not set, using in-memory store")
            return False

        if not os.path.exists(creds_path):
            logger.db_error(f"Credentials file not found at: {creds_path}")
            return False

        try:
            try:
                firebase_admin.get_app()
            except ValueError:
                logger.db("Initializing Firebase app...")
                firebase_admin.initialize_app(credentials.Certificate(creds_path))
            self.db = firestore.client()
            self._initialized = True
        except Exception as e:
            logger.db_error(f"Failed to initialize Firebase: {e}", exc_info=True)
            return False

        logger.success("[DB] Firebase Firestore connected successfully!")
        return True

    def is_connected(self) -> bool:
        return self._initialized and self.db is not None

    def _courses(self, user_id: str):
        return self.db.collection("users").document(user_id).collection("courses")

    def list_courses(self, user_id: str) -> List[Dict[str, Any]]:
        """All course documents for a user, in no particular order."""
        if not self.is_connected():
            return [copy.deepcopy(doc) for (uid, _), doc in self._cache.items() if uid == user_id]

        try:
            with Timer() as timer:
                docs = [doc.to_dict() for doc in self._courses(user_id).stream()]
        except Exception as e:
            raise PersistenceError(f"Could not list courses for {user_id}: {e}") from e
        logger.db(f"Loaded {len(docs)} courses for {user_id} ({timer.duration_ms:.0f}ms)")
        return docs

    def upsert_course(self, user_id: str, course_id: str, data: Dict[str, Any]) -> None:
        """Create or merge-update one course document."""
        if not self.is_connected():
            key = (user_id, course_id)
            self._cache[key] = _merge(self._cache.get(key, {}), data)
            return

        try:
            self._courses(user_id).document(course_id).set(data, merge=True)
        except Exception as e:
            raise PersistenceError(f"Could not save {course_path(user_id, course_id)}: {e}") from e
        logger.db(f"Saved {course_path(user_id, course_id)}")

    def delete_course(self, user_id: str, course_id: str) -> None:
        if not self.is_connected():
            self._cache.pop((user_id, course_id), None)
            return

        try:
            self._courses(user_id).document(course_id).delete()
        except Exception as e:
            raise PersistenceError(f"Could not delete {course_path(user_id, course_id)}: {e}") from e
        logger.db(f"Deleted {course_path(user_id, course_id)}")
