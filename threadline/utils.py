import os
import json
import asyncio
import logging
import platform
from pathlib import Path
from typing import Any, Awaitable, Optional, Set
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

APP_DATA_DIR_ENV = "THREADLINE_HOME"

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def get_app_data_dir() -> Path:
    """Determine OS-specific application data directory for Threadline."""
    override = os.getenv(APP_DATA_DIR_ENV)
    if override:
        root = Path(override).expanduser()
    else:
        system = platform.system()
        user_home = Path.home()

        if system == "Windows":
            root = user_home / "AppData" / "Local" / "Threadline"
        elif system == "Darwin":
            root = user_home / "Library" / "Application Support" / "Threadline"
        else:  # Linux and others
            root = user_home / ".local" / "share" / "threadline"

    root.mkdir(parents=True, exist_ok=True)
    return root


def load_all_dotenv():
    """Load .env from current directory and global app data directory."""
    # Load from current directory
    load_dotenv()
    # Load from global app data directory
    global_env = get_app_data_dir() / ".env"
    if global_env.exists():
        load_dotenv(dotenv_path=global_env, override=False)


# ---------------------------------------------------------------------------
# Settings Persistence
# ---------------------------------------------------------------------------


def get_settings_path() -> Path:
    """Return the path to the settings.json file."""
    return get_app_data_dir() / "settings.json"


def load_settings() -> dict:
    """Load settings from the settings.json file."""
    path = get_settings_path()
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load settings from {path}: {e}")
    return {}


def save_settings(settings: dict):
    """Save settings to the settings.json file."""
    path = get_settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    def _default(obj):
        if isinstance(obj, Path):
            return str(obj)
        raise TypeError(
            f"Object of type {obj.__class__.__name__} is not JSON serializable"
        )

    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(settings, f, indent=4, default=_default)
    except OSError as e:
        logger.error(f"Failed to save settings to {path}: {e}")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(level: str = "WARNING", log_file: Optional[Path] = None):
    """Send log records to a file so they never interleave with the chat."""
    if log_file is None:
        log_file = get_app_data_dir() / "threadline.log"
    logging.basicConfig(
        filename=str(log_file),
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# ---------------------------------------------------------------------------
# Background work
# ---------------------------------------------------------------------------


class BackgroundTasks:
    """Fire-and-forget tasks that are kept referenced until they finish."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}")

    async def drain(self):
        """Wait for every pending task, including ones spawned meanwhile."""
        while self._tasks:
            pending = [task for task in self._tasks if not task.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            else:
                # Finished tasks leave the set from their done callbacks.
                await asyncio.sleep(0)
