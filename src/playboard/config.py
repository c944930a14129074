"""Board configuration loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings


class BoardConfig(BaseSettings):
    """Board configuration loaded from environment variables.

    Settings are loaded from environment variables with sensible defaults.
    For local development, create a .env file in the project root.
    """

    # Firebase Realtime Database + anonymous auth
    firebase_database_url: str = Field(
        default="",
        description="Realtime Database URL, e.g. https://<project>-default-rtdb.<region>.firebasedatabase.app",
    )
    firebase_api_key: str = Field(
        default="",
        description="Web API key used for anonymous sign-in",
    )

    # Gemini (optional auto-fill)
    gemini_api_key: str = Field(
        default="",
        description="Gemini API key; auto-fill is disabled when empty",
    )
    gemini_model: str = Field(
        default="gemini-2.5-flash",
        description="Gemini model used for schedule suggestions",
    )

    # Paths
    state_dir: str = Field(
        default="data/state",
        description="Directory for the persisted sign-in and teacher name",
    )

    # Locking
    lock_timeout_seconds: int = Field(
        default=120,
        description="Age after which a slot lock is treated as absent",
    )

    # Presence
    presence_heartbeat_seconds: float = Field(
        default=30.0,
        description="Interval between lastSeen refreshes; presence older than three intervals counts as offline",
    )

    # HTTP
    request_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for each REST call to Firebase or Gemini",
    )

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def lock_timeout_ms(self) -> int:
        return self.lock_timeout_seconds * 1000


# Singleton pattern
_config: BoardConfig | None = None


def get_config() -> BoardConfig:
    """Get the board configuration singleton.

    Returns:
        BoardConfig: Board configuration instance
    """
    global _config
    if _config is None:
        _config = BoardConfig()
    return _config
