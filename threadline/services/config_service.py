from __future__ import annotations

import os
from typing import Optional

from threadline.errors import ConfigurationError


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


class TrackerConfigService:
    """Configuration accessors for the tracker, read from environment variables."""

    @staticmethod
    def get_database_url() -> str:
        """Get the async SQLAlchemy database URL. Missing configuration is fatal."""
        url = os.getenv("DATABASE_URL")
        if not url:
            raise ConfigurationError("DATABASE_URL environment variable is not set")
        return url

    @staticmethod
    def get_claude_api_key() -> Optional[str]:
        """Get Claude API key from environment variables."""
        return os.getenv("ANTHROPIC_API_KEY") or os.getenv("CLAUDE_API_KEY")

    @staticmethod
    def is_ai_enabled() -> bool:
        return TrackerConfigService.get_claude_api_key() is not None

    @staticmethod
    def get_ai_model() -> str:
        """Get the Claude model used for extraction, judging and answers."""
        return os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5")

    @staticmethod
    def get_max_tokens() -> int:
        return _int_env("CLAUDE_MAX_TOKENS", 1024)

    @staticmethod
    def get_ai_timeout() -> int:
        """Get timeout for AI requests in seconds."""
        return _int_env("AI_TIMEOUT", 30)

    @staticmethod
    def get_embedding_model() -> str:
        """Get the litellm embedding model string (provider/model)."""
        return os.getenv("EMBEDDING_MODEL", "openai/text-embedding-3-small")

    @staticmethod
    def get_embedding_dimensions() -> int:
        return _int_env("EMBEDDING_DIMENSIONS", 1536)

    @staticmethod
    def get_duplicate_threshold() -> float:
        """Similarity at or above which a candidate may be the same unit of work."""
        return _float_env("DUPLICATE_THRESHOLD", 0.85)

    @staticmethod
    def get_related_threshold() -> float:
        """Similarity at or above which a candidate counts as related."""
        return _float_env("RELATED_THRESHOLD", 0.70)

    @staticmethod
    def get_max_trackable_priority() -> int:
        """Issues extracted with a priority above this value are rejected."""
        return _int_env("MAX_TRACKABLE_PRIORITY", 4)

    @staticmethod
    def get_tracker_token() -> Optional[str]:
        """Bearer secret for the tool transport."""
        return os.getenv("TRACKER_TOKEN") or None

    @staticmethod
    def get_dashboard_token() -> Optional[str]:
        return os.getenv("DASHBOARD_TOKEN") or None

    @staticmethod
    def is_production() -> bool:
        """Production deployments set ENVIRONMENT=production; session cookies become Secure."""
        return os.getenv("ENVIRONMENT", "development").strip().lower() == "production"

    @staticmethod
    def get_slack_bot_token() -> Optional[str]:
        return os.getenv("SLACK_BOT_TOKEN") or None

    @staticmethod
    def get_slack_signing_secret() -> Optional[str]:
        return os.getenv("SLACK_SIGNING_SECRET") or None

    @staticmethod
    def get_base_url() -> Optional[str]:
        """Public base URL used to link issue ids in chat replies."""
        return os.getenv("TRACKER_BASE_URL") or None


def is_ai_enabled() -> bool:
    """Convenience function to check if AI is enabled."""
    return TrackerConfigService.is_ai_enabled()
