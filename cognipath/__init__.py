"""CogniPath: AI-generated learning paths with a personal tutor."""

from .app import create_session
from .models import AppState, AppStep
from .session import LearningSession

__version__ = "0.1.0"

__all__ = ["create_session", "AppState", "AppStep", "LearningSession", "__version__"]
