"""
OpenAI-backed content generation for CogniPath.

This module handles:
- Learning pillar generation (30 per subject)
- Lesson path generation (10 per pillar)
- Curriculum generation for a selected path
- Overview audio (text-to-speech, raw PCM)
- Starting the tutor chat for a path
- Lesson illustration URLs

Every generation call either returns fully validated models or raises
GenerationError with a message that can be shown to the user. There are no
fallback results and no automatic retries.
"""

import base64
import json
import random
import re
from typing import List, Optional, Dict, Any, Sequence
from urllib.parse import quote

from .errors import GenerationError
from .logger import logger, Timer
from .models import (
    LearningPillar, LessonPath, Curriculum, CaseStudy, SubLesson, ChatMessage,
    PillarIcon, Difficulty,
)
from .schemas import (
    PILLARS_SCHEMA, PATHS_SCHEMA, CURRICULUM_SCHEMA,
    REQUIRED_PILLAR_FIELDS, REQUIRED_PATH_FIELDS, REQUIRED_CURRICULUM_FIELDS,
    REQUIRED_CASE_STUDY_FIELDS, REQUIRED_SUB_LESSON_FIELDS,
)
from .tutor import TutorChat, build_system_instruction
from .config import DEFAULT_CHAT_MODEL, DEFAULT_TTS_MODEL, DEFAULT_TTS_VOICE

PILLAR_COUNT = 30
PATH_COUNT = 10

PILLARS_ERROR = "Failed to generate learning pillars. Please try again."
PATHS_ERROR = "Failed to generate lesson paths."
CURRICULUM_ERROR = "Failed to generate curriculum."
AUDIO_ERROR = "Failed to generate audio overview."

VISUAL_ENDPOINT = "https://image.pollinations.ai/prompt/"

_FENCE_RE = re.compile(r"```(?:json)?\n?|\n?```")


class _InvalidResponse(Exception):
    """Raised internally when a response is missing data; becomes GenerationError."""


def clean_json(text: str) -> str:
    """Strip markdown code fences the model sometimes wraps around JSON."""
    return _FENCE_RE.sub("", text or "").strip()


def _require(data: Dict[str, Any], required: Sequence[str], what: str) -> None:
    if not isinstance(data, dict):
        raise _InvalidResponse(f"{what} is not an object")
    missing = [key for key in required if data.get(key) in (None, "")]
    if missing:
        raise _InvalidResponse(f"{what} missing fields: {', '.join(missing)}")


def _unwrap_list(data: Any, key: str) -> List[Any]:
    """JSON mode returns an object; accept either {key: [...]} or a bare list."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    raise _InvalidResponse(f"Expected a list under '{key}'")


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        raise _InvalidResponse(f"Expected a list of strings, got {type(value).__name__}")
    return [str(item) for item in value]


def build_overview_script(curriculum: Curriculum) -> str:
    """Narration text for the module overview audio."""
    lessons = ". ".join(
        f"Lesson {i + 1}: {lesson.title}. {lesson.content}"
        for i, lesson in enumerate(curriculum.sub_lessons)
    )
    return (
        f"Welcome to the module: {curriculum.path_title}.\n"
        f"{curriculum.introduction}\n\n"
        f"In this module, we will focus on the following key concepts: "
        f"{', '.join(curriculum.key_concepts)}.\n\n"
        f"Here is an overview of the lessons:\n{lessons}\n\n"
        "Let's get started."
    )


def lesson_visual_url(description: str, seed: Optional[int] = None) -> Optional[str]:
    """
    Image URL for a sub-lesson's visual description.

    Returns None when there is nothing to draw; the caller then shows the
    description as a text placeholder.
    """
    if not description or not description.strip():
        return None
    if seed is None:
        seed = random.randint(0, 999)
    encoded = quote(description.strip(), safe="")
    return f"{VISUAL_ENDPOINT}{encoded}?nologo=true&width=800&height=600&seed={seed}"


class ContentGateway:
    """
    Typed facade over the OpenAI API.

    ``client`` may be None when no API key is configured; every generation
    call then fails with GenerationError and tutor chats answer with the
    fallback reply.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        chat_model: str = DEFAULT_CHAT_MODEL,
        tts_model: str = DEFAULT_TTS_MODEL,
        tts_voice: str = DEFAULT_TTS_VOICE,
    ):
        self.client = client
        self.chat_model = chat_model
        self.tts_model = tts_model
        self.tts_voice = tts_voice

    def is_available(self) -> bool:
        return self.client is not None

    # -----------------------------------------------------------------------
    # JSON generation
    # -----------------------------------------------------------------------

    def _generate_json(self, system: str, prompt: str, label: str) -> Any:
        if self.client is None:
            raise _InvalidResponse("OpenAI client not configured")

        logger.api_call(f"chat.completions.create [{label}]", model=self.chat_model)
        with Timer() as timer:
            completion = self.client.chat.completions.create(
                model=self.chat_model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
            )
        logger.api_response(f"chat.completions.create [{label}]", duration_ms=timer.duration_ms)

        raw = completion.choices[0].message.content
        if not raw:
            raise _InvalidResponse("Empty response")
        return json.loads(clean_json(raw))

    def generate_pillars(self, subject: str) -> List[LearningPillar]:
        """Break a subject into exactly 30 pillars, numbered 1..30 in order."""
        logger.api(f"generate_pillars() called for subject: {subject}")
        system = (
            "You are a structural learning architect. You output strict JSON.\n"
            + PILLARS_SCHEMA
        )
        prompt = (
            "Act as an expert curriculum designer.\n"
            f'Break down the subject "{subject}" into exactly {PILLAR_COUNT} distinct, '
            'high-level "Learning Pillars" or key topic areas.\n'
            "These should cover the subject from beginner to advanced mastery.\n"
            "For each pillar, select one icon category: tech (coding, computers), "
            "science (chemistry, physics), art (design, creative), business (finance, management), "
            "history (past events), health (medicine, fitness), math (numbers, stats), "
            "law (legal, politics), language (speech, writing), philosophy (thinking, mind), "
            "social (people, culture), nature (plants, env), music (audio), "
            'data (databases, charts). Use "general" if none fit perfectly.'
        )
        try:
            items = _unwrap_list(self._generate_json(system, prompt, "pillars"), "pillars")
            if len(items) < PILLAR_COUNT:
                raise _InvalidResponse(f"Expected {PILLAR_COUNT} pillars, got {len(items)}")
            pillars = []
            # Model ids are ignored; position decides the id
            for index, item in enumerate(items[:PILLAR_COUNT]):
                _require(item, REQUIRED_PILLAR_FIELDS, f"pillar {index + 1}")
                pillars.append(LearningPillar(
                    id=index + 1,
                    title=str(item["title"]).strip(),
                    description=str(item["description"]).strip(),
                    icon=PillarIcon.from_string(item.get("icon")),
                ))
        except Exception as e:
            logger.api_error(f"Pillar generation failed: {e}", exc_info=True)
            raise GenerationError(PILLARS_ERROR) from e

        logger.success(f"Generated {len(pillars)} pillars for '{subject}'")
        return pillars

    def generate_lesson_paths(self, subject: str, pillar_title: str) -> List[LessonPath]:
        """Exactly 10 lesson paths for one pillar, numbered 1..10."""
        logger.api(f"generate_lesson_paths() called for: {subject} / {pillar_title}")
        system = "You are an expert curriculum designer. You output strict JSON.\n" + PATHS_SCHEMA
        prompt = (
            f'For the subject "{subject}" and the specific pillar "{pillar_title}", '
            f'generate exactly {PATH_COUNT} specific "Lesson Paths".\n'
            "Each path should be a focused module or course that a student could take.\n"
            "Include difficulty levels."
        )
        try:
            items = _unwrap_list(self._generate_json(system, prompt, "paths"), "paths")
            if len(items) < PATH_COUNT:
                raise _InvalidResponse(f"Expected {PATH_COUNT} paths, got {len(items)}")
            paths = []
            for index, item in enumerate(items[:PATH_COUNT]):
                _require(item, REQUIRED_PATH_FIELDS, f"path {index + 1}")
                paths.append(LessonPath(
                    id=index + 1,
                    title=str(item["title"]).strip(),
                    description=str(item["description"]).strip(),
                    difficulty=Difficulty.from_string(item["difficulty"]),
                    estimated_time=str(item["estimated_time"]).strip(),
                ))
        except Exception as e:
            logger.api_error(f"Lesson path generation failed: {e}", exc_info=True)
            raise GenerationError(PATHS_ERROR) from e

        logger.success(f"Generated {len(paths)} lesson paths for '{pillar_title}'")
        return paths

    def generate_curriculum(self, subject: str, pillar_title: str, path_title: str) -> Curriculum:
        """Full micro-curriculum for a path. ``audio_data`` is left empty."""
        logger.api(f"generate_curriculum() called for: {path_title}")
        system = "You are an expert curriculum designer. You output strict JSON.\n" + CURRICULUM_SCHEMA
        prompt = (
            f'Create a detailed, deep-dive micro-curriculum for the lesson path: "{path_title}".\n'
            f'Context: Subject is "{subject}", Pillar is "{pillar_title}".\n\n'
            "The curriculum must be comprehensive, engaging, and easy to digest.\n"
            "Include:\n"
            "1. A clear, engaging introduction paragraph.\n"
            "2. 3-5 clear learning objectives.\n"
            "3. 3-5 key concepts to master.\n"
            "4. 2-3 real-world use cases.\n"
            "5. A short, narrative case study (title, scenario, outcome).\n"
            "6. 3-5 sub-lessons, each with a summary, a detailed explanation of the general "
            "concepts, 2-3 use cases, 1-2 one-sentence case studies, 1-2 references, a concrete "
            "example, a highly detailed image-generation prompt that visualizes the concept, "
            "and a practical action item.\n"
            "7. 3-4 resources for the whole path: books, search terms, or seminal papers."
        )
        try:
            data = self._generate_json(system, prompt, "curriculum")
            curriculum = self._parse_curriculum(data)
        except Exception as e:
            logger.api_error(f"Curriculum generation failed: {e}", exc_info=True)
            raise GenerationError(CURRICULUM_ERROR) from e

        logger.success(
            f"Curriculum ready: {len(curriculum.objectives)} objectives, "
            f"{len(curriculum.sub_lessons)} sub-lessons"
        )
        return curriculum

    def _parse_curriculum(self, data: Dict[str, Any]) -> Curriculum:
        _require(data, REQUIRED_CURRICULUM_FIELDS, "curriculum")
        _require(data["case_study"], REQUIRED_CASE_STUDY_FIELDS, "case study")

        raw_lessons = data["sub_lessons"]
        if not isinstance(raw_lessons, list) or not raw_lessons:
            raise _InvalidResponse("curriculum has no sub-lessons")

        sub_lessons = []
        for index, item in enumerate(raw_lessons):
            _require(item, REQUIRED_SUB_LESSON_FIELDS, f"sub-lesson {index + 1}")
            sub_lessons.append(SubLesson(
                title=str(item["title"]),
                content=str(item["content"]),
                general_concepts=str(item["general_concepts"]),
                use_cases=_str_list(item["use_cases"]),
                case_studies=_str_list(item["case_studies"]),
                references=_str_list(item["references"]),
                example=str(item["example"]),
                visual_description=str(item["visual_description"]),
                action_item=str(item["action_item"]),
            ))

        return Curriculum(
            path_title=str(data["path_title"]),
            introduction=str(data["introduction"]),
            objectives=_str_list(data["objectives"]),
            key_concepts=_str_list(data["key_concepts"]),
            real_world_use_cases=_str_list(data["real_world_use_cases"]),
            case_study=CaseStudy(
                title=str(data["case_study"]["title"]),
                scenario=str(data["case_study"]["scenario"]),
                outcome=str(data["case_study"]["outcome"]),
            ),
            sub_lessons=sub_lessons,
            resources=_str_list(data["resources"]),
        )

    # -----------------------------------------------------------------------
    # Text-to-speech
    # -----------------------------------------------------------------------

    def generate_module_audio(self, script: str) -> str:
        """
        Narrate the overview script.

        Returns Base64 raw PCM (24 kHz, 16-bit little-endian, mono), ready
        for ``audio.pcm_to_wav``.
        """
        logger.audio(f"generate_module_audio() - {len(script)} chars, voice={self.tts_voice}")
        try:
            if self.client is None:
                raise _InvalidResponse("OpenAI client not configured")
            if not script.strip():
                raise _InvalidResponse("Empty narration script")

            logger.api_call("audio.speech.create", model=self.tts_model)
            with Timer() as timer:
                response = self.client.audio.speech.create(
                    model=self.tts_model,
                    voice=self.tts_voice,
                    input=script,
                    response_format="pcm",
                )
            logger.api_response("audio.speech.create", duration_ms=timer.duration_ms)

            pcm = response.content
            if not pcm:
                raise _InvalidResponse("No audio data generated")
        except Exception as e:
            logger.api_error(f"Audio generation failed: {e}", exc_info=True)
            raise GenerationError(AUDIO_ERROR) from e

        logger.audio(f"Overview audio ready: {len(pcm)} PCM bytes")
        return base64.b64encode(pcm).decode("ascii")

    # -----------------------------------------------------------------------
    # Tutor chat
    # -----------------------------------------------------------------------

    def start_chat(
        self,
        subject: str,
        pillar_title: str,
        path_title: str,
        curriculum: Curriculum,
        history: Optional[List[ChatMessage]] = None,
    ) -> TutorChat:
        """New tutor context for a path, continuing from ``history`` if given."""
        chat = TutorChat(
            client=self.client,
            model=self.chat_model,
            system_instruction=build_system_instruction(subject, pillar_title, path_title, curriculum),
            history=history,
        )
        logger.api(f"Tutor chat started for '{path_title}' ({len(chat.messages)} prior turns)")
        return chat
