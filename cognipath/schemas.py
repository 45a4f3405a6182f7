"""
JSON shapes the model must return for each generation call.

The shape text is pasted into the system prompt (the model is called in
JSON mode, which only guarantees *some* JSON object), and the REQUIRED_*
tuples are what the gateway checks before accepting a response.
"""

from .models import PillarIcon, Difficulty

ICON_TAGS = ", ".join(f'"{icon.value}"' for icon in PillarIcon)
DIFFICULTY_LEVELS = ", ".join(f'"{level.value}"' for level in Difficulty)

PILLARS_SCHEMA = f"""
Return ONLY a JSON object of this shape:
{{
  "pillars": [
    {{
      "id": 1,
      "title": "Short pillar title",
      "description": "One or two sentences on what this pillar covers",
      "icon": one of [{ICON_TAGS}]
    }}
  ]
}}
"""

PATHS_SCHEMA = f"""
Return ONLY a JSON object of this shape:
{{
  "paths": [
    {{
      "id": 1,
      "title": "Course title",
      "description": "What the learner will be able to do afterwards",
      "difficulty": one of [{DIFFICULTY_LEVELS}],
      "estimated_time": "e.g. 45 minutes"
    }}
  ]
}}
"""

CURRICULUM_SCHEMA = """
Return ONLY a JSON object of this shape:
{
  "path_title": "Title of the lesson path",
  "introduction": "An engaging introduction paragraph",
  "objectives": ["Learning objective", ...],
  "key_concepts": ["Key concept", ...],
  "real_world_use_cases": ["Why this matters in practice", ...],
  "case_study": {
    "title": "Case study title",
    "scenario": "The situation",
    "outcome": "What happened and why"
  },
  "sub_lessons": [
    {
      "title": "Sub-lesson title",
      "content": "Brief summary",
      "general_concepts": "Detailed explanation (Markdown allowed)",
      "use_cases": ["Specific application", ...],
      "case_studies": ["One-sentence company or event example", ...],
      "references": ["Book, term or documentation to look up", ...],
      "example": "A concrete example or analogy",
      "visual_description": "A detailed image-generation prompt that illustrates the concept",
      "action_item": "A practical exercise"
    }
  ],
  "resources": ["Recommended book, search term or paper", ...]
}
"""

REQUIRED_PILLAR_FIELDS = ("title", "description")
REQUIRED_PATH_FIELDS = ("title", "description", "difficulty", "estimated_time")
REQUIRED_CURRICULUM_FIELDS = (
    "path_title", "introduction", "objectives", "key_concepts",
    "real_world_use_cases", "case_study", "sub_lessons", "resources",
)
REQUIRED_CASE_STUDY_FIELDS = ("title", "scenario", "outcome")
REQUIRED_SUB_LESSON_FIELDS = (
    "title", "content", "general_concepts", "use_cases", "case_studies",
    "references", "example", "visual_description", "action_item",
)
