"""
The user's course library and its remote persistence.

Remote writes are fire-and-forget: ``save_course`` hands the document to a
``WriteQueue`` whose daemon thread performs the Firestore upsert. Only the
newest payload per course is kept, so a burst of progress updates produces
one write (last-write-wins). Failures are logged and never surface to the
user; the optimistic local state is not rolled back.
"""

import dataclasses
import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Optional, Any, Set, Tuple, Iterator

from .database import DatabaseClient
from .errors import PersistenceError
from .logger import logger, Timer
from .models import AppState, SavedCourse, ChatMessage

_Key = Tuple[str, str]   # (user_id, course_id)


def now_ms() -> int:
    return int(time.time() * 1000)


class WriteQueue:
    """
    Pending course writes, one slot per course.

    Each submit bumps a monotonic version; a drain writes the newest
    payload for every course and remembers the version it wrote. Drains are
    serialized, so an older payload can never overwrite a newer one.
    """

    def __init__(self, database: DatabaseClient, autostart: bool = True):
        self.database = database
        self._lock = threading.Lock()
        self._drain_lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._pending: Dict[_Key, Tuple[int, Dict[str, Any]]] = {}
        self._written: Dict[_Key, int] = {}
        self._version = 0
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        if autostart:
            self.start()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="cognipath-writes", daemon=True)
        self._thread.start()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def written_version(self, user_id: str, course_id: str) -> Optional[int]:
        with self._lock:
            return self._written.get((user_id, course_id))

    def submit(self, user_id: str, course_id: str, payload: Dict[str, Any]) -> int:
        with self._lock:
            self._version += 1
            self._pending[(user_id, course_id)] = (self._version, payload)
            self._wakeup.notify()
            return self._version

    def discard(self, user_id: str, course_id: str) -> bool:
        """Drop a pending write. True if one was queued."""
        with self._lock:
            return self._pending.pop((user_id, course_id), None) is not None

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Block drains (and wait for an in-flight one) for the duration."""
        with self._drain_lock:
            yield

    def flush(self) -> int:
        """Write everything pending in the calling thread. Returns the number written."""
        return self._drain()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._wakeup.notify()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self._drain()

    def _run(self) -> None:
        while True:
            with self._lock:
                while not self._pending and not self._closed:
                    self._wakeup.wait()
                if self._closed:
                    return
            self._drain()

    def _drain(self) -> int:
        written = 0
        with self._drain_lock:
            with self._lock:
                batch = self._pending
                self._pending = {}
            if not batch:
                return 0

            logger.task_start(f"course_sync ({len(batch)} documents)")
            with Timer() as timer:
                for (user_id, course_id), (version, payload) in batch.items():
                    if version <= self._written.get((user_id, course_id), 0):
                        continue
                    try:
                        self.database.upsert_course(user_id, course_id, payload)
                    except PersistenceError as e:
                        logger.task_error("course_sync", str(e))
                        continue
                    with self._lock:
                        self._written[(user_id, course_id)] = version
                    written += 1
            logger.task_complete(f"course_sync ({written}/{len(batch)} written)", duration_ms=timer.duration_ms)
        return written


def progress_changed(course: SavedCourse, state: AppState) -> bool:
    """Whether the active session holds progress the saved course lacks."""
    if set(course.completed_sub_lessons) != set(state.completed_sub_lessons):
        return True
    if course.sub_lesson_feedback != state.sub_lesson_feedback:
        return True
    audio = state.curriculum.audio_data if state.curriculum else None
    return bool(audio) and not course.curriculum.audio_data


def _promote(library: List[SavedCourse], course: SavedCourse) -> List[SavedCourse]:
    """Replace ``course`` in the library and move it to the front (most recent)."""
    return [course] + [c for c in library if c.id != course.id]


class CourseLibrary:
    """Load, save, delete and sync the saved courses of a user."""

    def __init__(self, database: DatabaseClient, queue: Optional[WriteQueue] = None):
        self.database = database
        self.queue = queue if queue is not None else WriteQueue(database)
        self._pending_deletes: Set[_Key] = set()

    def load_library(self, user_id: str) -> List[SavedCourse]:
        """All saved courses, most recently accessed first. Failures give an empty list."""
        self._retry_deletes(user_id)
        try:
            documents = self.database.list_courses(user_id)
        except PersistenceError as e:
            logger.error(f"Error fetching courses: {e}")
            return []

        courses = []
        for doc in documents:
            try:
                course = SavedCourse.from_dict(doc)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed course document: {e}")
                continue
            if (user_id, course.id) in self._pending_deletes:
                continue
            courses.append(course)

        courses.sort(key=lambda c: c.last_accessed, reverse=True)
        logger.db(f"Library loaded: {len(courses)} courses")
        return courses

    def save_course(self, user_id: str, course: SavedCourse) -> None:
        """Queue a merge-upsert of ``course``; returns immediately."""
        self.queue.submit(user_id, course.id, course.to_dict())

    def delete_course(self, user_id: str, course_id: str) -> bool:
        """
        Delete a course remotely. The caller has already removed it locally.

        On failure the delete is retried on the next ``load_library`` and the
        course stays hidden until then. Returns True if the remote delete
        succeeded.
        """
        with self.queue.paused():
            self.queue.discard(user_id, course_id)
            try:
                self.database.delete_course(user_id, course_id)
            except PersistenceError as e:
                logger.error(f"Failed to delete course: {e}")
                self._pending_deletes.add((user_id, course_id))
                return False
        self._pending_deletes.discard((user_id, course_id))
        return True

    def _retry_deletes(self, user_id: str) -> None:
        for key in [k for k in self._pending_deletes if k[0] == user_id]:
            logger.db(f"Retrying delete of course {key[1]}")
            self.delete_course(*key)

    def sync_progress(self, state: AppState, now: Optional[int] = None) -> Tuple[AppState, Optional[SavedCourse]]:
        """
        Copy the session's progress onto the active course if it changed.

        Returns the new state and the updated course (None when nothing was
        written).
        """
        course = state.active_course
        if course is None or not progress_changed(course, state):
            return state, None

        updated = dataclasses.replace(
            course,
            completed_sub_lessons=list(state.completed_sub_lessons),
            sub_lesson_feedback=dict(state.sub_lesson_feedback),
            curriculum=state.curriculum or course.curriculum,
            last_accessed=now if now is not None else now_ms(),
        )
        if state.user is not None:
            self.save_course(state.user.id, updated)
        return dataclasses.replace(state, library=_promote(state.library, updated)), updated

    def record_chat_turns(
        self,
        state: AppState,
        course_id: Optional[str],
        turns: List[ChatMessage],
        now: Optional[int] = None,
    ) -> AppState:
        """
        Append finished tutor turns to the transcript of course ``course_id``
        and save it.

        The id is the course the question was asked in, which may no longer
        be the active one. Turns for a course that has left the library are
        dropped.
        """
        course = next((c for c in state.library if c.id == course_id), None)
        if course is None:
            return state
        updated = dataclasses.replace(
            course,
            chat_history=course.chat_history + [t for t in turns if not t.is_thinking],
            last_accessed=now if now is not None else now_ms(),
        )
        if state.user is not None:
            self.save_course(state.user.id, updated)
        return dataclasses.replace(state, library=_promote(state.library, updated))

    def flush(self) -> int:
        return self.queue.flush()

    def close(self) -> None:
        self.queue.close()
