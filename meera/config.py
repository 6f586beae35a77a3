"""Configuration management for API keys and settings."""

import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from loguru import logger

# config.py is in meera/, .env is in project root
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"{name} is not an integer, using {default}")
        return default


def _env_choice(name: str, default: str, choices: List[str]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        logger.warning(f"{name}={value!r} is not one of {choices}, using {default!r}")
        return default
    return value


class Config:
    """Application configuration from environment variables."""

    # Chat provider ("gemini" or "ollama")
    CHAT_PROVIDER: str = _env_choice("CHAT_PROVIDER", "gemini", ["gemini", "ollama"])

    # Gemini settings
    GEMINI_API_KEY: Optional[str] = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    GEMINI_BASE_URL: str = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")
    GEMINI_TTS_MODEL: str = os.getenv("GEMINI_TTS_MODEL", "gemini-2.5-flash-preview-tts")
    GEMINI_TTS_VOICE: str = os.getenv("GEMINI_TTS_VOICE", "Algenib")

    # Ollama settings (no API key needed, it's local)
    OLLAMA_URL: str = os.getenv("OLLAMA_URL", "http://localhost:11434")
    OLLAMA_MODEL: str = os.getenv("OLLAMA_MODEL", "gemma3:4b")

    REQUEST_TIMEOUT_SECONDS: int = _env_int("REQUEST_TIMEOUT_SECONDS", 90)
    # Per-sentence budget for speech synthesis; a slower sentence is skipped
    SYNTHESIS_TIMEOUT_SECONDS: int = _env_int("SYNTHESIS_TIMEOUT_SECONDS", 15)

    # Deepgram API key (only needed for local microphone capture)
    DEEPGRAM_API_KEY: Optional[str] = os.getenv("DEEPGRAM_API_KEY")

    # Durable message log
    HISTORY_PATH: str = os.getenv("HISTORY_PATH", str(Path.home() / ".meera" / "history.json"))

    # Reveal and turn-taking timing
    REVEAL_INTERVAL_MS: int = _env_int("REVEAL_INTERVAL_MS", 30)
    REVEAL_CHUNK_CHARS: int = _env_int("REVEAL_CHUNK_CHARS", 1)
    RESTART_DEBOUNCE_MS: int = _env_int("RESTART_DEBOUNCE_MS", 300)
    GRACE_DELAY_MS: int = _env_int("GRACE_DELAY_MS", 400)

    SPEAK_REPLIES: bool = _env_bool("SPEAK_REPLIES", True)

    # What happens to the user's message when the chat request fails
    ROLLBACK_POLICY: str = _env_choice("ROLLBACK_POLICY", "rollback", ["rollback", "retain"])
    # When listening is re-armed after a model turn
    RESTART_POLICY: str = _env_choice("RESTART_POLICY", "always", ["always", "on_success", "never"])

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls) -> List[str]:
        """Validate configuration and return list of missing required settings."""
        missing = []

        if cls.CHAT_PROVIDER == "gemini" and not cls.GEMINI_API_KEY:
            missing.append("GEMINI_API_KEY (required when CHAT_PROVIDER=gemini)")

        if cls.REVEAL_CHUNK_CHARS < 1:
            missing.append("REVEAL_CHUNK_CHARS must be at least 1")

        # Deepgram is optional; typed input and browser capture work without it

        return missing


def setup_logging(level: Optional[str] = None) -> None:
    """Route loguru output to stderr at the configured level."""
    logger.remove()
    logger.add(sys.stderr, level=level or Config.LOG_LEVEL)
