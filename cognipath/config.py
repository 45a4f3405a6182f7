"""
Runtime settings for CogniPath.

Secrets and paths come from the environment, optionally via a ``.env`` file
at the project root:

    OPENAI_API_KEY=sk-...
    FIREBASE_CREDENTIALS_PATH=./firebase-service-account.json

We use python-dotenv + os.getenv so secrets stay out of git.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .logger import logger

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_TTS_MODEL = "tts-1"
DEFAULT_TTS_VOICE = "nova"
DEFAULT_STATE_PATH = os.path.join("~", ".cognipath", "state.json")
DEFAULT_MOCK_AUTH_DELAY = 0.8


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    chat_model: str = DEFAULT_CHAT_MODEL
    tts_model: str = DEFAULT_TTS_MODEL
    tts_voice: str = DEFAULT_TTS_VOICE
    firebase_credentials_path: Optional[str] = None
    state_path: str = DEFAULT_STATE_PATH
    mock_auth_delay: float = DEFAULT_MOCK_AUTH_DELAY


def mask_secret(secret: str) -> str:
    """Show the first 8 and last 4 characters of a key."""
    if len(secret) > 12:
        return f"{secret[:8]}...{secret[-4:]}"
    return "***"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a number, using {default}")
        return default


def load_settings(dotenv_path: Optional[str] = None) -> Settings:
    """Load settings from the environment (and ``.env`` if present)."""
    logger.separator("CogniPath Configuration")

    if load_dotenv(dotenv_path):
        logger.env_success("dotenv file loaded successfully")
    else:
        logger.warning("No .env file found or file is empty")

    api_key = os.getenv("OPENAI_API_KEY") or None
    if api_key:
        logger.env_success(f"OPENAI_API_KEY found: {mask_secret(api_key)}")
    else:
        logger.env_error("OPENAI_API_KEY not found in environment!")
        logger.warning("Content generation will fail until a key is configured")

    creds_path = os.getenv("FIREBASE_CREDENTIALS_PATH") or None
    if creds_path:
        logger.env(f"Firebase credentials: {creds_path}")
    else:
        logger.warning("FIREBASE_CREDENTIALS_PATH not set, running in demo mode")

    settings = Settings(
        openai_api_key=api_key,
        chat_model=os.getenv("COGNIPATH_CHAT_MODEL") or DEFAULT_CHAT_MODEL,
        tts_model=os.getenv("COGNIPATH_TTS_MODEL") or DEFAULT_TTS_MODEL,
        tts_voice=os.getenv("COGNIPATH_TTS_VOICE") or DEFAULT_TTS_VOICE,
        firebase_credentials_path=creds_path,
        state_path=os.getenv("COGNIPATH_STATE_PATH") or DEFAULT_STATE_PATH,
        mock_auth_delay=_float_env("COGNIPATH_MOCK_AUTH_DELAY", DEFAULT_MOCK_AUTH_DELAY),
    )
    logger.env(f"Chat model: {settings.chat_model}")
    logger.env(f"TTS model: {settings.tts_model} (voice: {settings.tts_voice})")
    return settings
