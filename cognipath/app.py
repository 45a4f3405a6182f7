"""
Wiring for a ready-to-use LearningSession.

Real collaborators are used where configuration allows; otherwise the
session runs in demo mode (mock sign-in, in-memory course store, and
generation calls that fail with a clear message until an API key is set).
"""

from typing import Optional

from openai import OpenAI

from .api import ContentGateway
from .auth import AuthProvider, FirebaseAuthProvider, MockAuthProvider
from .config import Settings, load_settings
from .database import DatabaseClient
from .library import CourseLibrary
from .logger import logger
from .session import LearningSession
from .storage import SnapshotStore


def create_gateway(settings: Settings) -> ContentGateway:
    client = OpenAI(api_key=settings.openai_api_key) if settings.openai_api_key else None
    if client is not None:
        logger.env_success("OpenAI client initialized successfully")
    return ContentGateway(
        client=client,
        chat_model=settings.chat_model,
        tts_model=settings.tts_model,
        tts_voice=settings.tts_voice,
    )


def create_auth(connected: bool, settings: Settings) -> AuthProvider:
    if connected:
        return FirebaseAuthProvider()
    logger.warning("Firebase not configured. App will run in demo/mock mode.")
    return MockAuthProvider(delay=settings.mock_auth_delay)


def create_session(settings: Optional[Settings] = None, restore: bool = True) -> LearningSession:
    """Build a session from settings (loaded from the environment by default)."""
    settings = settings or load_settings()

    database = DatabaseClient()
    connected = database.initialize(settings.firebase_credentials_path)

    session = LearningSession(
        gateway=create_gateway(settings),
        library=CourseLibrary(database),
        auth=create_auth(connected, settings),
        snapshots=SnapshotStore(settings.state_path),
    )
    if restore:
        session.restore()
    session.attach_auth()

    logger.banner("CogniPath - Session Ready")
    return session
