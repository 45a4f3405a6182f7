import dataclasses
import threading

import pytest

from cognipath import session as transitions
from cognipath.api import PILLARS_ERROR, ContentGateway
from cognipath.auth import MockAuthProvider
from cognipath.errors import InvalidTransitionError
from cognipath.library import CourseLibrary
from cognipath.models import AppState, AppStep, ChatMessage, User
from cognipath.session import STORAGE_LIMIT_MESSAGE, LearningSession
from cognipath.storage import SnapshotStore
from cognipath.tutor import FALLBACK_REPLY

from fakes import (
    FakeClock, FakeOpenAI, curriculum_json, make_course, make_curriculum, make_path,
    make_pillar, paths_json, pillars_json,
)


@pytest.fixture
def snapshots(tmp_path) -> SnapshotStore:
    return SnapshotStore(str(tmp_path / "state.json"))


@pytest.fixture
def session(openai_client: FakeOpenAI, library: CourseLibrary, snapshots: SnapshotStore, clock: FakeClock):
    return LearningSession(
        gateway=ContentGateway(client=openai_client),
        library=library,
        auth=MockAuthProvider(delay=0),
        snapshots=snapshots,
        clock=clock,
    )


def open_course(session: LearningSession, client: FakeOpenAI, subject: str = "Quantum Physics"):
    client.queue(pillars_json(), paths_json(), curriculum_json(lessons=3))
    session.sign_in()
    session.start_new_course()
    assert session.submit_subject(subject)
    assert session.select_pillar(session.state.pillars[0])
    return session.select_path(session.state.paths[0])


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

def test_sign_in_lands_on_dashboard_with_library(session: LearningSession, library: CourseLibrary) -> None:
    library.database.upsert_course("mock-user-1", "old", make_course("old").to_dict())
    session.auth.sign_in = lambda id_token=None: User(id="mock-user-1", name="Demo Student")

    user = session.sign_in()

    assert session.state.step is AppStep.DASHBOARD
    assert session.state.user == user
    assert [c.id for c in session.state.library] == ["old"]


def test_attached_auth_drives_the_session(session: LearningSession) -> None:
    session.attach_auth()
    session.auth.sign_in()
    assert session.state.step is AppStep.DASHBOARD

    session.auth.sign_out()
    assert session.state == AppState()


def test_full_learning_flow(session: LearningSession, openai_client: FakeOpenAI, library: CourseLibrary) -> None:
    course = open_course(session, openai_client)
    state = session.state

    assert state.step is AppStep.CURRICULUM
    assert state.subject == "Quantum Physics"
    assert state.selected_pillar.title == "Foundations"
    assert state.selected_path.title == "Getting Started"
    assert state.active_course_id == course.id
    assert state.library[0].id == course.id
    assert state.chat_history[0].id == "welcome"
    assert "**Getting Started**" in state.chat_history[0].text
    assert "3 main objectives" in state.chat_history[0].text
    assert session.tutor is not None

    session.toggle_sub_lesson(0)
    assert session.state.progress == 33
    assert session.state.active_course.progress == 33
    assert session.state.active_course.completed_sub_lessons == [0]

    library.flush()
    saved = library.load_library(session.state.user.id)
    assert [c.completed_sub_lessons for c in saved] == [[0]]


def test_generation_failure_then_retry(session: LearningSession, openai_client: FakeOpenAI) -> None:
    session.sign_in()
    session.start_new_course()
    openai_client.queue(RuntimeError("quota"))

    assert session.submit_subject("Biology") is False
    assert session.state.step is AppStep.INPUT
    assert session.state.error == PILLARS_ERROR
    assert session.state.is_loading is False

    openai_client.queue(pillars_json())
    assert session.submit_subject("Biology") is True
    assert session.state.step is AppStep.PILLARS
    assert session.state.error is None
    assert len(session.state.pillars) == 30


def test_blank_subject_does_nothing(session: LearningSession, openai_client: FakeOpenAI) -> None:
    session.sign_in()
    session.start_new_course()
    before = session.state
    assert session.submit_subject("   ") is False
    assert session.state is before
    assert openai_client.calls == []


def test_actions_in_the_wrong_step_are_rejected(session: LearningSession) -> None:
    session.sign_in()
    with pytest.raises(InvalidTransitionError):
        session.submit_subject("Art")
    with pytest.raises(InvalidTransitionError):
        session.select_pillar(make_pillar())
    with pytest.raises(InvalidTransitionError):
        session.select_path(make_path())
    with pytest.raises(InvalidTransitionError):
        session.toggle_sub_lesson(0)


def test_go_back_discards_generated_content(session: LearningSession, openai_client: FakeOpenAI) -> None:
    openai_client.queue(pillars_json(), paths_json())
    session.sign_in()
    session.start_new_course()
    session.submit_subject("History")
    session.select_pillar(session.state.pillars[3])

    state = session.go_back()
    assert state.step is AppStep.PILLARS
    assert state.paths == [] and state.selected_pillar is None
    assert len(state.pillars) == 30

    state = session.go_back()
    assert state.step is AppStep.INPUT
    assert state.pillars == [] and state.subject == ""

    assert session.go_back().step is AppStep.DASHBOARD
    assert session.go_back().step is AppStep.DASHBOARD


def test_leaving_a_course_returns_to_dashboard(session: LearningSession, openai_client: FakeOpenAI) -> None:
    course = open_course(session, openai_client)
    state = session.go_back()

    assert state.step is AppStep.DASHBOARD
    assert state.curriculum is None
    assert state.active_course_id is None
    assert session.tutor is None
    assert [c.id for c in state.library] == [course.id]


def test_toggle_and_feedback(session: LearningSession, openai_client: FakeOpenAI) -> None:
    open_course(session, openai_client)

    session.toggle_sub_lesson(1)
    session.toggle_sub_lesson(1)
    assert session.state.completed_sub_lessons == []

    session.set_sub_lesson_feedback(2, "helpful")
    session.set_sub_lesson_feedback(2, "unhelpful")
    assert session.state.sub_lesson_feedback == {2: "unhelpful"}
    assert session.state.active_course.sub_lesson_feedback == {2: "unhelpful"}

    with pytest.raises(InvalidTransitionError):
        session.set_sub_lesson_feedback(0, "meh")
    with pytest.raises(InvalidTransitionError):
        session.toggle_sub_lesson(3)


def test_select_path_saves_the_new_course(session: LearningSession, openai_client: FakeOpenAI, library: CourseLibrary) -> None:
    course = open_course(session, openai_client)
    assert course.created_at == course.last_accessed == int(course.id)

    library.flush()
    assert library.load_library(session.state.user.id) == [course]


def test_resume_restores_the_course_exactly(session: LearningSession, openai_client: FakeOpenAI) -> None:
    transcript = [
        ChatMessage(id="q", role="user", text="Earlier question", timestamp=1),
        ChatMessage(id="a", role="model", text="Earlier answer", timestamp=2),
    ]
    saved = make_course("c1", completed_sub_lessons=[1], sub_lesson_feedback={0: "helpful"}, chat_history=transcript)
    session.sign_in()
    session._commit(lambda s: dataclasses.replace(s, library=[make_course("c0"), saved]))

    course = session.resume_course("c1")
    state = session.state

    assert state.step is AppStep.CURRICULUM
    assert state.active_course_id == "c1"
    assert state.subject == saved.subject
    assert state.curriculum == saved.curriculum
    assert state.completed_sub_lessons == [1]
    assert state.sub_lesson_feedback == {0: "helpful"}
    assert [m.id for m in state.chat_history] == ["resume"]
    assert course.last_accessed > saved.last_accessed
    assert state.library[0].id == "c1"
    assert [m["content"] for m in session.tutor.messages] == ["Earlier question", "Earlier answer"]

    with pytest.raises(InvalidTransitionError):
        session.resume_course("c0")


def test_delete_course(session: LearningSession, openai_client: FakeOpenAI, library: CourseLibrary) -> None:
    course = open_course(session, openai_client)
    library.flush()
    session.go_back()

    assert session.delete_course(course.id) is True
    assert session.state.library == []
    assert library.load_library(session.state.user.id) == []


def test_chat_turns_are_recorded_on_the_course(session: LearningSession, openai_client: FakeOpenAI) -> None:
    open_course(session, openai_client)
    openai_client.queue("Superposition means both at once.")

    reply = session.send_message("What is superposition?")

    assert reply == "Superposition means both at once."
    assert [m.role for m in session.state.chat_history] == ["model", "user", "model"]
    assert not any(m.is_thinking for m in session.state.chat_history)
    transcript = session.state.active_course.chat_history
    assert [m.text for m in transcript] == ["What is superposition?", reply]
    assert session.send_message("  ") is None


def test_failed_chat_turn_shows_fallback_only(session: LearningSession, openai_client: FakeOpenAI) -> None:
    open_course(session, openai_client)
    openai_client.queue(RuntimeError("offline"))

    assert session.send_message("Hello?") == FALLBACK_REPLY
    assert session.state.chat_history[-1].text == FALLBACK_REPLY
    assert session.state.active_course.chat_history == []


def test_late_reply_is_saved_on_the_course_it_was_asked_in(
    session: LearningSession, openai_client: FakeOpenAI, library: CourseLibrary
) -> None:
    course_a = open_course(session, openai_client)
    other = make_course("c-other")
    session._commit(lambda s: dataclasses.replace(s, library=s.library + [other]))

    tutor = session.tutor

    def slow_reply(text: str) -> str:
        # The user leaves and opens another course before the answer arrives
        session.go_back()
        session.resume_course("c-other")
        return "Answer meant for course A"

    tutor.send_message = slow_reply
    session.send_message("Question about course A")

    by_id = {c.id: c for c in session.state.library}
    assert [m.text for m in by_id[course_a.id].chat_history] == [
        "Question about course A", "Answer meant for course A"]
    assert by_id["c-other"].chat_history == []
    assert session.state.active_course_id == "c-other"

    library.flush()
    saved = {c.id: c for c in library.load_library(session.state.user.id)}
    assert saved["c-other"].chat_history == []
    assert len(saved[course_a.id].chat_history) == 2


def test_queued_turns_keep_their_own_placeholders(session: LearningSession, openai_client: FakeOpenAI) -> None:
    open_course(session, openai_client)
    openai_client.chat.completions.delay = 0.2
    openai_client.queue("first reply", "second reply")
    histories = []
    session.subscribe(lambda s: histories.append(s.chat_history))

    threads = [threading.Thread(target=session.send_message, args=(q,)) for q in ("q1", "q2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    def replies(history):
        return [m for m in history if m.role == "model" and not m.is_thinking and m.id != "welcome"]

    after_first = next(h for h in histories if len(replies(h)) == 1)
    assert sum(m.is_thinking for m in after_first) == 1

    final = session.state.chat_history
    assert not any(m.is_thinking for m in final)
    assert [m.role for m in final] == ["model", "user", "model", "user", "model"]
    assert {m.text for m in replies(final)} == {"first reply", "second reply"}


def test_chat_requires_an_open_course(session: LearningSession) -> None:
    session.sign_in()
    with pytest.raises(InvalidTransitionError):
        session.send_message("hi")


def test_audio_is_generated_once(session: LearningSession, openai_client: FakeOpenAI) -> None:
    open_course(session, openai_client)

    first = session.request_audio()
    second = session.request_audio()

    assert first[:4] == b"RIFF" and first[8:12] == b"WAVE"
    assert first == second
    assert len(openai_client.audio.speech.calls) == 1
    assert session.state.active_course.curriculum.audio_data


def test_audio_failure_sets_error(session: LearningSession, openai_client: FakeOpenAI) -> None:
    open_course(session, openai_client)
    openai_client.audio.speech.pcm = RuntimeError("tts down")

    assert session.request_audio() is None
    assert session.state.error == "Failed to generate audio overview."


def test_lesson_visual(session: LearningSession, openai_client: FakeOpenAI) -> None:
    open_course(session, openai_client)
    url = session.lesson_visual(0, seed=3)
    assert url.endswith("seed=3")
    assert "A%20diagram%20for%20lesson%201" in url


# ---------------------------------------------------------------------------
# Snapshot and listeners
# ---------------------------------------------------------------------------

def test_restore_resumes_where_the_user_left(
    session: LearningSession, openai_client: FakeOpenAI, library: CourseLibrary, snapshots: SnapshotStore
) -> None:
    open_course(session, openai_client)
    placeholder = ChatMessage(id="thinking", role="model", text="", timestamp=1, is_thinking=True)
    session._commit(lambda s: dataclasses.replace(
        s, is_loading=True, error="boom", chat_history=s.chat_history + [placeholder]))

    restored = LearningSession(
        gateway=ContentGateway(client=openai_client),
        library=library,
        auth=MockAuthProvider(delay=0),
        snapshots=snapshots,
    )
    state = restored.restore()

    assert state == transitions.sanitize_for_snapshot(session.state)
    assert state.is_loading is False and state.error is None
    assert restored.tutor is not None


def test_restore_without_snapshot(session: LearningSession) -> None:
    assert session.restore() == AppState()
    assert session.tutor is None


def test_sign_out_clears_everything(session: LearningSession, openai_client: FakeOpenAI, snapshots: SnapshotStore) -> None:
    open_course(session, openai_client)
    session.sign_out()

    assert session.state == AppState()
    assert session.tutor is None
    assert snapshots.load() is None


def test_snapshot_failure_is_reported(tmp_path, openai_client: FakeOpenAI, library: CourseLibrary) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    session = LearningSession(
        gateway=ContentGateway(client=openai_client),
        library=library,
        auth=MockAuthProvider(delay=0),
        snapshots=SnapshotStore(str(blocker / "state.json")),
    )
    session.sign_in()

    assert session.state.step is AppStep.DASHBOARD
    assert session.save_error == STORAGE_LIMIT_MESSAGE


def test_listeners_see_every_commit(session: LearningSession) -> None:
    steps = []
    unsubscribe = session.subscribe(lambda s: steps.append(s.step))
    session.sign_in()
    session.start_new_course()
    unsubscribe()
    session.go_back()

    assert steps == [AppStep.DASHBOARD, AppStep.INPUT]


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------

def test_signed_in_keeps_a_restored_step() -> None:
    user = User(id="u1")
    restored = AppState(step=AppStep.PATHS)
    assert transitions.signed_in(restored, user, []).step is AppStep.PATHS
    assert transitions.signed_in(AppState(), user, []).step is AppStep.DASHBOARD


def test_start_new_course_clears_the_previous_one() -> None:
    state = AppState(step=AppStep.DASHBOARD, subject="Old", active_course_id="c1",
                     curriculum=make_curriculum(), completed_sub_lessons=[0])
    fresh = transitions.start_new_course(state)
    assert fresh.step is AppStep.INPUT
    assert (fresh.subject, fresh.curriculum, fresh.active_course_id, fresh.completed_sub_lessons) == ("", None, None, [])


def test_attach_audio_ignores_stale_results() -> None:
    assert transitions.attach_audio(AppState(), "AAAA") == AppState()
    with_audio = AppState(curriculum=dataclasses.replace(make_curriculum(), audio_data="OLD"))
    assert transitions.attach_audio(with_audio, "NEW") is with_audio


def test_remove_active_course_clears_the_pointer() -> None:
    state = AppState(library=[make_course("a"), make_course("b")], active_course_id="a")
    state = transitions.remove_course(state, "a")
    assert [c.id for c in state.library] == ["b"]
    assert state.active_course_id is None


def test_finishing_a_turn_keeps_other_placeholders() -> None:
    q1 = ChatMessage(id="q1", role="user", text="one", timestamp=1)
    q2 = ChatMessage(id="q2", role="user", text="two", timestamp=2)
    t1, t2 = transitions.thinking_placeholder(q1), transitions.thinking_placeholder(q2)
    assert t1.id != t2.id and t1.is_thinking

    state = transitions.chat_turn_started(AppState(), q1, t1)
    state = transitions.chat_turn_started(state, q2, t2)
    reply = ChatMessage(id="r1", role="model", text="answer one", timestamp=3)
    state = transitions.chat_turn_finished(state, reply, t1.id)

    assert [m.id for m in state.chat_history] == ["q1", "r1", "q2", t2.id]
    assert [m.id for m in transitions.chat_turn_abandoned(state, t2.id).chat_history] == ["q1", "r1", "q2"]


def test_finishing_a_turn_whose_placeholder_is_gone_appends_the_reply() -> None:
    reply = ChatMessage(id="r1", role="model", text="late", timestamp=3)
    state = transitions.chat_turn_finished(AppState(), reply, "thinking-q1")
    assert state.chat_history == [reply]
