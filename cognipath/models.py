from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import List, Optional, Dict, Any


FEEDBACK_VALUES = ("helpful", "unhelpful")


class PillarIcon(str, Enum):
    """Category tag used to pick an icon for a learning pillar."""
    TECH = "tech"
    SCIENCE = "science"
    ART = "art"
    BUSINESS = "business"
    HISTORY = "history"
    HEALTH = "health"
    MATH = "math"
    LAW = "law"
    LANGUAGE = "language"
    PHILOSOPHY = "philosophy"
    SOCIAL = "social"
    NATURE = "nature"
    MUSIC = "music"
    DATA = "data"
    GENERAL = "general"

    @classmethod
    def from_string(cls, s: Optional[str]) -> "PillarIcon":
        try:
            return cls((s or "").strip().lower())
        except ValueError:
            return cls.GENERAL


class Difficulty(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"

    @classmethod
    def from_string(cls, s: Optional[str]) -> "Difficulty":
        """Case-insensitive lookup; raises ValueError for unknown levels."""
        wanted = (s or "").strip().lower()
        for level in cls:
            if level.value.lower() == wanted:
                return level
        raise ValueError(f"Unknown difficulty: {s!r}")


class AppStep(str, Enum):
    """Screens of the learning flow, in forward order."""
    AUTH = "AUTH"
    DASHBOARD = "DASHBOARD"
    INPUT = "INPUT"
    PILLARS = "PILLARS"
    PATHS = "PATHS"
    CURRICULUM = "CURRICULUM"


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def progress_percentage(completed: List[int], total: int) -> int:
    """Completion percentage, rounded half up."""
    if total <= 0:
        return 0
    return int(len(set(completed)) / total * 100 + 0.5)


@dataclass
class LearningPillar:
    """A top-level topic area within a subject."""
    id: int
    title: str
    description: str = ""
    icon: PillarIcon = PillarIcon.GENERAL

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["icon"] = self.icon.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningPillar":
        data = _known(cls, data)
        data["icon"] = PillarIcon.from_string(data.get("icon"))
        return cls(**data)


@dataclass
class LessonPath:
    """A focused course within a pillar."""
    id: int
    title: str
    description: str = ""
    difficulty: Difficulty = Difficulty.BEGINNER
    estimated_time: str = ""             # free text, e.g. "45 minutes"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["difficulty"] = self.difficulty.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LessonPath":
        data = _known(cls, data)
        data["difficulty"] = Difficulty.from_string(data.get("difficulty", Difficulty.BEGINNER.value))
        return cls(**data)


@dataclass
class SubLesson:
    """One unit of a curriculum. Referenced by its position, not an id."""
    title: str
    content: str = ""                    # brief summary
    general_concepts: str = ""           # deep-dive explanation (Markdown)
    use_cases: List[str] = field(default_factory=list)
    case_studies: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    example: str = ""
    visual_description: str = ""         # prompt for the lesson illustration
    action_item: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubLesson":
        return cls(**_known(cls, data))


@dataclass
class CaseStudy:
    title: str = ""
    scenario: str = ""
    outcome: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaseStudy":
        return cls(**_known(cls, data))


@dataclass
class Curriculum:
    """The generated lesson plan for a selected path."""
    path_title: str
    introduction: str = ""
    objectives: List[str] = field(default_factory=list)
    key_concepts: List[str] = field(default_factory=list)
    real_world_use_cases: List[str] = field(default_factory=list)
    case_study: CaseStudy = field(default_factory=CaseStudy)
    sub_lessons: List[SubLesson] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)
    audio_data: Optional[str] = None     # Base64 PCM overview, filled on first playback

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Curriculum":
        data = _known(cls, data)
        data["case_study"] = CaseStudy.from_dict(data.get("case_study") or {})
        data["sub_lessons"] = [SubLesson.from_dict(s) for s in data.get("sub_lessons") or []]
        return cls(**data)


@dataclass
class ChatMessage:
    id: str
    role: str                            # "user" or "model"
    text: str
    timestamp: int                       # epoch milliseconds
    is_thinking: bool = False            # UI placeholder while a reply is pending

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(**_known(cls, data))


def _feedback_to_dict(feedback: Dict[int, str]) -> Dict[str, str]:
    # JSON and Firestore keys must be strings
    return {str(k): v for k, v in feedback.items()}


def _feedback_from_dict(data: Optional[Dict[Any, str]]) -> Dict[int, str]:
    return {int(k): v for k, v in (data or {}).items()}


@dataclass
class SavedCourse:
    """
    A course in the user's library.

    Created when a path is selected and updated whenever completion,
    feedback, audio or the tutor transcript change.
    """
    id: str                              # creation timestamp in ms
    subject: str
    pillar: LearningPillar
    path: LessonPath
    curriculum: Curriculum
    completed_sub_lessons: List[int] = field(default_factory=list)
    sub_lesson_feedback: Dict[int, str] = field(default_factory=dict)
    created_at: int = 0
    last_accessed: int = 0
    chat_history: List[ChatMessage] = field(default_factory=list)

    @property
    def progress(self) -> int:
        return progress_percentage(self.completed_sub_lessons, len(self.curriculum.sub_lessons))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "pillar": self.pillar.to_dict(),
            "path": self.path.to_dict(),
            "curriculum": self.curriculum.to_dict(),
            "completed_sub_lessons": list(self.completed_sub_lessons),
            "sub_lesson_feedback": _feedback_to_dict(self.sub_lesson_feedback),
            "created_at": self.created_at,
            "last_accessed": self.last_accessed,
            "chat_history": [m.to_dict() for m in self.chat_history if not m.is_thinking],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedCourse":
        data = _known(cls, data)
        data["pillar"] = LearningPillar.from_dict(data["pillar"])
        data["path"] = LessonPath.from_dict(data["path"])
        data["curriculum"] = Curriculum.from_dict(data["curriculum"])
        data["completed_sub_lessons"] = [int(i) for i in data.get("completed_sub_lessons") or []]
        data["sub_lesson_feedback"] = _feedback_from_dict(data.get("sub_lesson_feedback"))
        data["chat_history"] = [ChatMessage.from_dict(m) for m in data.get("chat_history") or []]
        return cls(**data)


@dataclass
class User:
    id: str
    name: str = "Learner"
    email: Optional[str] = None
    photo_url: Optional[str] = None
    joined_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(**_known(cls, data))


@dataclass
class AppState:
    """
    The aggregate root of a learning session.

    Treat instances as immutable: transitions in ``cognipath.session``
    return a new AppState via ``dataclasses.replace``.
    """
    step: AppStep = AppStep.AUTH
    user: Optional[User] = None
    library: List[SavedCourse] = field(default_factory=list)   # last_accessed desc
    active_course_id: Optional[str] = None

    # Active session
    subject: str = ""
    selected_pillar: Optional[LearningPillar] = None
    selected_path: Optional[LessonPath] = None
    curriculum: Optional[Curriculum] = None
    completed_sub_lessons: List[int] = field(default_factory=list)
    sub_lesson_feedback: Dict[int, str] = field(default_factory=dict)
    pillars: List[LearningPillar] = field(default_factory=list)
    paths: List[LessonPath] = field(default_factory=list)
    chat_history: List[ChatMessage] = field(default_factory=list)

    is_loading: bool = False
    error: Optional[str] = None

    @property
    def active_course(self) -> Optional[SavedCourse]:
        if self.active_course_id is None:
            return None
        for course in self.library:
            if course.id == self.active_course_id:
                return course
        return None

    @property
    def progress(self) -> int:
        if self.curriculum is None:
            return 0
        return progress_percentage(self.completed_sub_lessons, len(self.curriculum.sub_lessons))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step.value,
            "user": self.user.to_dict() if self.user else None,
            "library": [c.to_dict() for c in self.library],
            "active_course_id": self.active_course_id,
            "subject": self.subject,
            "selected_pillar": self.selected_pillar.to_dict() if self.selected_pillar else None,
            "selected_path": self.selected_path.to_dict() if self.selected_path else None,
            "curriculum": self.curriculum.to_dict() if self.curriculum else None,
            "completed_sub_lessons": list(self.completed_sub_lessons),
            "sub_lesson_feedback": _feedback_to_dict(self.sub_lesson_feedback),
            "pillars": [p.to_dict() for p in self.pillars],
            "paths": [p.to_dict() for p in self.paths],
            "chat_history": [m.to_dict() for m in self.chat_history],
            "is_loading": self.is_loading,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppState":
        """Build a state from a (possibly older) snapshot; missing keys keep their defaults."""
        data = _known(cls, data)
        if "step" in data:
            data["step"] = AppStep(data["step"])
        if data.get("user"):
            data["user"] = User.from_dict(data["user"])
        if data.get("selected_pillar"):
            data["selected_pillar"] = LearningPillar.from_dict(data["selected_pillar"])
        if data.get("selected_path"):
            data["selected_path"] = LessonPath.from_dict(data["selected_path"])
        if data.get("curriculum"):
            data["curriculum"] = Curriculum.from_dict(data["curriculum"])
        data["library"] = [SavedCourse.from_dict(c) for c in data.get("library") or []]
        data["pillars"] = [LearningPillar.from_dict(p) for p in data.get("pillars") or []]
        data["paths"] = [LessonPath.from_dict(p) for p in data.get("paths") or []]
        data["chat_history"] = [ChatMessage.from_dict(m) for m in data.get("chat_history") or []]
        data["completed_sub_lessons"] = [int(i) for i in data.get("completed_sub_lessons") or []]
        data["sub_lesson_feedback"] = _feedback_from_dict(data.get("sub_lesson_feedback"))
        return cls(**data)
