"""
The learning session state machine.

Steps: AUTH -> DASHBOARD <-> INPUT -> PILLARS -> PATHS -> CURRICULUM, with
CURRICULUM -> DASHBOARD as the only way out of a course.

The module has two layers:
- Pure transition functions ``(state, ...) -> state``. They never touch the
  network or disk and are what the tests exercise directly.
- ``LearningSession``, which owns the single AppState, calls the gateway,
  tutor and library, and commits results through the transitions. Every
  commit writes the local snapshot and notifies listeners.
"""

import dataclasses
import threading
import time
import uuid
from typing import Callable, List, Optional

from .api import ContentGateway, build_overview_script, lesson_visual_url
from .audio import pcm_to_wav
from .auth import AuthProvider
from .errors import AuthError, GenerationError, InvalidTransitionError, StorageError
from .library import CourseLibrary
from .logger import logger
from .models import (
    AppState, AppStep, ChatMessage, Curriculum, LearningPillar, LessonPath,
    SavedCourse, User, FEEDBACK_VALUES,
)
from .storage import SnapshotStore
from .tutor import TutorChat, FALLBACK_REPLY

StateListener = Callable[[AppState], None]

STORAGE_LIMIT_MESSAGE = "Storage limit reached."

replace = dataclasses.replace


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------

def initial_state() -> AppState:
    return AppState()


def _require_step(state: AppState, *steps: AppStep) -> None:
    if state.step not in steps:
        allowed = ", ".join(s.value for s in steps)
        raise InvalidTransitionError(f"Not allowed in step {state.step.value} (expected {allowed})")


def _check_index(state: AppState, index: int) -> None:
    if state.curriculum is None:
        raise InvalidTransitionError("No curriculum is open")
    if not 0 <= index < len(state.curriculum.sub_lessons):
        raise InvalidTransitionError(f"Sub-lesson index out of range: {index}")


def signed_in(state: AppState, user: User, library: List[SavedCourse]) -> AppState:
    """A user was detected. Only AUTH advances; a restored session keeps its step."""
    step = AppStep.DASHBOARD if state.step == AppStep.AUTH else state.step
    return replace(state, user=user, library=library, step=step)


def signed_out(state: AppState) -> AppState:
    return initial_state()


def start_new_course(state: AppState) -> AppState:
    _require_step(state, AppStep.DASHBOARD, AppStep.INPUT)
    return replace(
        state,
        step=AppStep.INPUT,
        subject="",
        selected_pillar=None,
        selected_path=None,
        curriculum=None,
        active_course_id=None,
        completed_sub_lessons=[],
        sub_lesson_feedback={},
        pillars=[],
        paths=[],
        chat_history=[],
        error=None,
    )


def begin_loading(state: AppState, **changes) -> AppState:
    return replace(state, is_loading=True, error=None, **changes)


def generation_failed(state: AppState, message: str) -> AppState:
    return replace(state, is_loading=False, error=message)


def pillars_loaded(state: AppState, pillars: List[LearningPillar]) -> AppState:
    return replace(state, is_loading=False, pillars=pillars, step=AppStep.PILLARS)


def paths_loaded(state: AppState, paths: List[LessonPath]) -> AppState:
    return replace(state, is_loading=False, paths=paths, step=AppStep.PATHS)


def curriculum_loaded(
    state: AppState,
    path: LessonPath,
    curriculum: Curriculum,
    course_id: str,
    welcome: ChatMessage,
) -> AppState:
    return replace(
        state,
        is_loading=False,
        selected_path=path,
        curriculum=curriculum,
        completed_sub_lessons=[],
        sub_lesson_feedback={},
        step=AppStep.CURRICULUM,
        active_course_id=course_id,
        chat_history=[welcome],
    )


def course_added(state: AppState, course: SavedCourse) -> AppState:
    return replace(state, library=[course] + [c for c in state.library if c.id != course.id])


def resume_course(state: AppState, course: SavedCourse, welcome: ChatMessage) -> AppState:
    """Open a saved course exactly as stored; nothing from the previous session carries over."""
    return replace(
        course_added(state, course),
        step=AppStep.CURRICULUM,
        active_course_id=course.id,
        subject=course.subject,
        selected_pillar=course.pillar,
        selected_path=course.path,
        curriculum=course.curriculum,
        completed_sub_lessons=list(course.completed_sub_lessons),
        sub_lesson_feedback=dict(course.sub_lesson_feedback),
        pillars=[],
        paths=[],
        chat_history=[welcome],
        is_loading=False,
        error=None,
    )


def go_back(state: AppState) -> AppState:
    """Step back one screen, discarding what was generated for the screen being left."""
    if state.step == AppStep.CURRICULUM:
        return replace(state, step=AppStep.DASHBOARD, active_course_id=None, curriculum=None, error=None)
    if state.step == AppStep.PATHS:
        return replace(state, step=AppStep.PILLARS, paths=[], selected_pillar=None, error=None)
    if state.step == AppStep.PILLARS:
        return replace(state, step=AppStep.INPUT, pillars=[], subject="", error=None)
    if state.step == AppStep.INPUT:
        return replace(state, step=AppStep.DASHBOARD, error=None)
    return state


def toggle_sub_lesson(state: AppState, index: int) -> AppState:
    _check_index(state, index)
    if index in state.completed_sub_lessons:
        completed = [i for i in state.completed_sub_lessons if i != index]
    else:
        completed = state.completed_sub_lessons + [index]
    return replace(state, completed_sub_lessons=completed)


def set_sub_lesson_feedback(state: AppState, index: int, kind: str) -> AppState:
    _check_index(state, index)
    if kind not in FEEDBACK_VALUES:
        raise InvalidTransitionError(f"Unknown feedback: {kind!r}")
    feedback = dict(state.sub_lesson_feedback)
    feedback[index] = kind
    return replace(state, sub_lesson_feedback=feedback)


def remove_course(state: AppState, course_id: str) -> AppState:
    active = None if state.active_course_id == course_id else state.active_course_id
    return replace(
        state,
        library=[c for c in state.library if c.id != course_id],
        active_course_id=active,
    )


def attach_audio(state: AppState, audio_data: str) -> AppState:
    # Stale result after navigating away, or audio already attached
    if state.curriculum is None or state.curriculum.audio_data:
        return state
    return replace(state, curriculum=replace(state.curriculum, audio_data=audio_data))


def thinking_placeholder(question: ChatMessage) -> ChatMessage:
    """Pending-reply marker for one question; each turn gets its own."""
    return ChatMessage(
        id=f"thinking-{question.id}",
        role="model",
        text="",
        timestamp=question.timestamp,
        is_thinking=True,
    )


def chat_turn_started(state: AppState, user_message: ChatMessage, placeholder: ChatMessage) -> AppState:
    return replace(state, chat_history=state.chat_history + [user_message, placeholder])


def chat_turn_finished(state: AppState, reply: ChatMessage, placeholder_id: str) -> AppState:
    """Put the reply where its placeholder was; other pending turns keep theirs."""
    history = list(state.chat_history)
    for i, msg in enumerate(history):
        if msg.id == placeholder_id:
            history[i] = reply
            break
    else:
        # Placeholder already gone (the chat was reset meanwhile)
        history.append(reply)
    return replace(state, chat_history=history)


def chat_turn_abandoned(state: AppState, placeholder_id: Optional[str] = None) -> AppState:
    """Drop one placeholder, or every placeholder when no id is given."""
    history = [
        m for m in state.chat_history
        if not (m.is_thinking and (placeholder_id is None or m.id == placeholder_id))
    ]
    return replace(state, chat_history=history)


def sanitize_for_snapshot(state: AppState) -> AppState:
    """What gets written locally: no loading flag, no error, no thinking placeholders."""
    return replace(
        chat_turn_abandoned(state),
        is_loading=False,
        error=None,
    )


def welcome_message(path: LessonPath, curriculum: Curriculum, timestamp: int) -> ChatMessage:
    return ChatMessage(
        id="welcome",
        role="model",
        text=(
            f"Hi! I'm your tutor for **{path.title}**. We'll cover "
            f"{len(curriculum.objectives)} main objectives today. "
            "Ask me anything as you go through the material!"
        ),
        timestamp=timestamp,
    )


def welcome_back_message(course: SavedCourse, timestamp: int) -> ChatMessage:
    return ChatMessage(
        id="resume",
        role="model",
        text=f"Welcome back to **{course.path.title}**! Ready to continue learning?",
        timestamp=timestamp,
    )


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class LearningSession:
    """
    Owns the AppState and drives it through the learning flow.

    Long calls (generation, tutor replies, audio) run in the caller's
    thread and outside the state lock; their results are committed against
    whatever state is current when they arrive.
    """

    def __init__(
        self,
        gateway: ContentGateway,
        library: CourseLibrary,
        auth: AuthProvider,
        snapshots: Optional[SnapshotStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.gateway = gateway
        self.library = library
        self.auth = auth
        self.snapshots = snapshots
        self._clock = clock
        self._state = initial_state()
        self._lock = threading.RLock()
        self._listeners: List[StateListener] = []
        self._tutor: Optional[TutorChat] = None
        self._unsubscribe_auth: Optional[Callable[[], None]] = None
        self.save_error: Optional[str] = None

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def tutor(self) -> Optional[TutorChat]:
        return self._tutor

    def _now(self) -> int:
        return int(self._clock() * 1000)

    # === Plumbing ===

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with every committed state. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, update: Callable[[AppState], AppState]) -> AppState:
        with self._lock:
            previous = self._state
            state = update(previous)
            if state is previous:
                return state
            self._state = state
            if state.step != previous.step:
                logger.transition(previous.step.value, state.step.value)
            self._write_snapshot(state)
            listeners = list(self._listeners)
        for listener in listeners:
            listener(state)
        return state

    def _write_snapshot(self, state: AppState) -> None:
        if self.snapshots is None:
            return
        try:
            self.snapshots.save(sanitize_for_snapshot(state))
            self.save_error = None
        except StorageError as e:
            logger.db_error(f"Failed to save state locally: {e}")
            self.save_error = STORAGE_LIMIT_MESSAGE

    def _sync_progress(self) -> None:
        now = self._now()
        self._commit(lambda s: self.library.sync_progress(s, now)[0])

    def _start_tutor(self, course: SavedCourse) -> None:
        self._tutor = self.gateway.start_chat(
            course.subject, course.pillar.title, course.path.title,
            course.curriculum, course.chat_history,
        )

    # === Startup and auth ===

    def restore(self) -> AppState:
        """Resume from the local snapshot, if one exists."""
        saved = self.snapshots.load() if self.snapshots is not None else None
        if saved is None:
            logger.info("No saved session, starting fresh")
            return self._state

        state = self._commit(lambda _: sanitize_for_snapshot(saved))
        logger.success(f"Restored session at step {state.step.value}")

        if (state.step == AppStep.CURRICULUM and state.curriculum
                and state.selected_pillar and state.selected_path):
            course = state.active_course
            history = course.chat_history if course is not None else state.chat_history
            self._tutor = self.gateway.start_chat(
                state.subject, state.selected_pillar.title, state.selected_path.title,
                state.curriculum, history,
            )
        return state

    def attach_auth(self) -> None:
        if self._unsubscribe_auth is None:
            self._unsubscribe_auth = self.auth.on_auth_state_changed(self._on_auth_changed)

    def _on_auth_changed(self, user: Optional[User]) -> None:
        if user is None:
            self._tutor = None
            self._commit(signed_out)
            return
        library = self.library.load_library(user.id)
        self._commit(lambda s: signed_in(s, user, library))

    def sign_in(self, id_token: Optional[str] = None) -> Optional[User]:
        """Sign in through the auth provider. Failure keeps the session at AUTH."""
        try:
            user = self.auth.sign_in(id_token)
        except AuthError as e:
            logger.error(f"Login failed: {e}")
            return None
        if self._unsubscribe_auth is None:
            self._on_auth_changed(user)
        return user

    def sign_out(self) -> None:
        try:
            self.auth.sign_out()
        except AuthError as e:
            logger.error(f"Logout failed: {e}")
        self._tutor = None
        self._commit(signed_out)
        if self.snapshots is not None:
            try:
                self.snapshots.clear()
            except StorageError as e:
                logger.db_error(f"Failed to clear saved state: {e}")

    # === Building a course ===

    def start_new_course(self) -> AppState:
        self._tutor = None
        return self._commit(start_new_course)

    def submit_subject(self, subject: str) -> bool:
        """Generate pillars for ``subject``. Returns False on blank input or failure."""
        subject = subject.strip()
        if not subject:
            return False
        _require_step(self._state, AppStep.INPUT)

        self._commit(lambda s: begin_loading(s, subject=subject))
        try:
            pillars = self.gateway.generate_pillars(subject)
        except GenerationError as e:
            self._commit(lambda s: generation_failed(s, str(e)))
            return False
        self._commit(lambda s: pillars_loaded(s, pillars))
        return True

    def select_pillar(self, pillar: LearningPillar) -> bool:
        _require_step(self._state, AppStep.PILLARS)
        subject = self._state.subject

        self._commit(lambda s: begin_loading(s, selected_pillar=pillar))
        try:
            paths = self.gateway.generate_lesson_paths(subject, pillar.title)
        except GenerationError as e:
            self._commit(lambda s: generation_failed(s, str(e)))
            return False
        self._commit(lambda s: paths_loaded(s, paths))
        return True

    def select_path(self, path: LessonPath) -> Optional[SavedCourse]:
        """
        Generate the curriculum for ``path`` and open it as a new course.

        The new course is added to the library and queued for saving after
        the session has moved to CURRICULUM.
        """
        _require_step(self._state, AppStep.PATHS)
        pillar = self._state.selected_pillar
        if pillar is None:
            raise InvalidTransitionError("Pillar not selected")
        subject = self._state.subject

        self._commit(lambda s: begin_loading(s, selected_path=path))
        try:
            curriculum = self.gateway.generate_curriculum(subject, pillar.title, path.title)
        except GenerationError as e:
            self._commit(lambda s: generation_failed(s, str(e)))
            return None

        now = self._now()
        course = SavedCourse(
            id=str(now),
            subject=subject,
            pillar=pillar,
            path=path,
            curriculum=curriculum,
            created_at=now,
            last_accessed=now,
        )
        self._start_tutor(course)
        welcome = welcome_message(path, curriculum, now)
        self._commit(lambda s: curriculum_loaded(s, path, curriculum, course.id, welcome))

        self._commit(lambda s: course_added(s, course))
        user = self._state.user
        if user is not None:
            self.library.save_course(user.id, course)
        return course

    # === Library ===

    def resume_course(self, course_id: str) -> SavedCourse:
        _require_step(self._state, AppStep.DASHBOARD, AppStep.INPUT)
        course = next((c for c in self._state.library if c.id == course_id), None)
        if course is None:
            raise InvalidTransitionError(f"No saved course {course_id}")

        now = self._now()
        course = replace(course, last_accessed=now)
        self._start_tutor(course)
        welcome = welcome_back_message(course, now)
        self._commit(lambda s: resume_course(s, course, welcome))

        user = self._state.user
        if user is not None:
            self.library.save_course(user.id, course)
        return course

    def delete_course(self, course_id: str) -> bool:
        """Remove a course from the library. False if the remote delete failed (it will be retried)."""
        self._commit(lambda s: remove_course(s, course_id))
        user = self._state.user
        if user is None:
            return True
        return self.library.delete_course(user.id, course_id)

    # === Working through a course ===

    def toggle_sub_lesson(self, index: int) -> AppState:
        self._commit(lambda s: toggle_sub_lesson(s, index))
        self._sync_progress()
        return self._state

    def set_sub_lesson_feedback(self, index: int, kind: str) -> AppState:
        self._commit(lambda s: set_sub_lesson_feedback(s, index, kind))
        self._sync_progress()
        return self._state

    def lesson_visual(self, index: int, seed: Optional[int] = None) -> Optional[str]:
        _check_index(self._state, index)
        lesson = self._state.curriculum.sub_lessons[index]
        return lesson_visual_url(lesson.visual_description, seed)

    def request_audio(self) -> Optional[bytes]:
        """
        WAV bytes of the module overview, generating the narration on first use.

        Returns None (and sets ``state.error``) if generation fails.
        """
        curriculum = self._state.curriculum
        if curriculum is None:
            raise InvalidTransitionError("No curriculum is open")
        if curriculum.audio_data:
            return pcm_to_wav(curriculum.audio_data)

        try:
            audio_data = self.gateway.generate_module_audio(build_overview_script(curriculum))
        except GenerationError as e:
            self._commit(lambda s: replace(s, error=str(e)))
            return None

        self._commit(lambda s: attach_audio(s, audio_data))
        self._sync_progress()
        return pcm_to_wav(audio_data)

    def send_message(self, text: str) -> Optional[str]:
        """Send a question to the tutor and return its reply (None for blank input)."""
        text = text.strip()
        if not text:
            return None
        tutor = self._tutor
        if tutor is None:
            raise InvalidTransitionError("Chat session not initialized")

        now = self._now()
        question = ChatMessage(id=uuid.uuid4().hex, role="user", text=text, timestamp=now)
        placeholder = thinking_placeholder(question)
        with self._lock:
            # The reply belongs to this course even if the user moves on
            course_id = self._state.active_course_id
            self._commit(lambda s: chat_turn_started(s, question, placeholder))

        reply_text = tutor.send_message(text)
        reply = ChatMessage(id=uuid.uuid4().hex, role="model", text=reply_text, timestamp=self._now())

        if reply_text == FALLBACK_REPLY:
            self._commit(lambda s: chat_turn_finished(s, reply, placeholder.id))
        else:
            self._commit(lambda s: self.library.record_chat_turns(
                chat_turn_finished(s, reply, placeholder.id), course_id,
                [question, reply], reply.timestamp))
        return reply_text

    # === Navigation ===

    def go_back(self) -> AppState:
        if self._state.step == AppStep.CURRICULUM:
            self._tutor = None
        return self._commit(go_back)

    def close(self) -> None:
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        self.library.close()
