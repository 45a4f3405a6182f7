"""
AI tutor chat for the active lesson path.

One ``TutorChat`` exists per selected or resumed path. It keeps the whole
conversation locally and sends it with every turn, since the chat
completions API is stateless.
"""

import threading
from typing import List, Optional, Dict, Any

from .errors import ChatError
from .logger import logger, Timer
from .models import ChatMessage, Curriculum

FALLBACK_REPLY = "I'm having trouble connecting right now. Please try again."

# Synthetic greetings shown in the chat but never sent to the model
SYNTHETIC_MESSAGE_IDS = frozenset({"welcome", "resume"})


def build_system_instruction(subject: str, pillar: str, path: str, curriculum: Curriculum) -> str:
    return (
        "You are an expert, friendly, and adaptive AI Tutor.\n"
        f'You are currently teaching a student about "{subject}".\n'
        f'The specific pillar is "{pillar}".\n'
        f'The current lesson path is "{path}".\n\n'
        "The curriculum context is:\n"
        f"Objectives: {', '.join(curriculum.objectives)}\n"
        f"Concepts: {', '.join(curriculum.key_concepts)}\n\n"
        "Your Goal:\n"
        "1. Answer questions clearly (ELI5 if asked).\n"
        "2. Identify gaps in knowledge.\n"
        "3. Suggest deeper dives or related topics if the user is curious.\n"
        "4. Be encouraging and structured.\n\n"
        "Keep responses concise and formatted with Markdown."
    )


def history_to_messages(history: List[ChatMessage]) -> List[Dict[str, str]]:
    """Convert stored chat turns to API messages, dropping placeholders and greetings."""
    messages = []
    for msg in history:
        if msg.is_thinking or msg.id in SYNTHETIC_MESSAGE_IDS:
            continue
        role = "assistant" if msg.role == "model" else "user"
        messages.append({"role": role, "content": msg.text})
    return messages


class TutorChat:
    """
    Conversational context for one lesson path.

    ``send_message`` never raises: failures come back as FALLBACK_REPLY.
    Overlapping calls are serialized, so turns reach the model in the
    order they were sent.
    """

    def __init__(
        self,
        client: Optional[Any],
        model: str,
        system_instruction: str,
        history: Optional[List[ChatMessage]] = None,
    ):
        self.client = client
        self.model = model
        self.system_instruction = system_instruction
        self._messages: List[Dict[str, str]] = history_to_messages(history or [])
        self._lock = threading.Lock()

    @property
    def messages(self) -> List[Dict[str, str]]:
        """Conversation turns so far (without the system instruction)."""
        return list(self._messages)

    def send_message(self, text: str) -> str:
        with self._lock:
            self._messages.append({"role": "user", "content": text})
            try:
                reply = self._complete()
            except ChatError as e:
                logger.api_error(f"Tutor reply failed: {e}")
                self._messages.pop()
                return FALLBACK_REPLY
            self._messages.append({"role": "assistant", "content": reply})
            return reply

    def _complete(self) -> str:
        if self.client is None:
            raise ChatError("OpenAI client not configured")

        messages = [{"role": "system", "content": self.system_instruction}] + self._messages
        try:
            logger.api_call("chat.completions.create [tutor]", model=self.model)
            with Timer() as timer:
                completion = self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=0.7,
                )
            logger.api_response("chat.completions.create [tutor]", duration_ms=timer.duration_ms)
            reply = completion.choices[0].message.content
        except Exception as e:
            raise ChatError(str(e)) from e

        if not reply or not reply.strip():
            raise ChatError("Empty reply from model")
        return reply.strip()
