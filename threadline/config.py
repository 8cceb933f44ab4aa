import os
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .utils import get_app_data_dir

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:3000/api"
DEFAULT_RESOURCE_ID = "default-user"


def _default_db_path() -> Path:
    return get_app_data_dir() / "threadline.db"


@dataclass
class ChatConfig:
    """Configuration for the chat client."""

    api_url: str = DEFAULT_API_URL
    resource_id: str = DEFAULT_RESOURCE_ID
    request_timeout: float = 30.0
    preload_count: int = 10
    db_path: Path = field(default_factory=_default_db_path)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "ChatConfig":
        """Create configuration from environment variables."""
        db_path = os.getenv("THREADLINE_DB_PATH")
        return cls(
            api_url=os.getenv("THREADLINE_API_URL", DEFAULT_API_URL),
            resource_id=os.getenv("THREADLINE_RESOURCE_ID", DEFAULT_RESOURCE_ID),
            request_timeout=float(os.getenv("THREADLINE_REQUEST_TIMEOUT", "30")),
            preload_count=int(os.getenv("THREADLINE_PRELOAD_COUNT", "10")),
            db_path=Path(db_path).expanduser() if db_path else _default_db_path(),
            log_level=os.getenv("THREADLINE_LOG_LEVEL", "WARNING"),
        )

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.api_url.startswith(("http://", "https://")):
            raise ValueError(
                f"API URL must start with http:// or https:// (got {self.api_url!r}). "
                "Set THREADLINE_API_URL."
            )
        if self.request_timeout <= 0:
            raise ValueError("THREADLINE_REQUEST_TIMEOUT must be positive.")
        if self.preload_count < 0:
            raise ValueError("THREADLINE_PRELOAD_COUNT must not be negative.")

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip("/")


def load_config(validate: bool = True, **overrides) -> ChatConfig:
    """Build the configuration from the environment.

    Keyword overrides (e.g. from command-line flags) win over the environment;
    overrides that are None are ignored.
    """
    config = ChatConfig.from_env()
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if validate:
        config.validate()
    logger.debug(f"Loaded config: api_url={config.api_url}, db_path={config.db_path}")
    return config
