"""Configuration management for juggler."""

import json
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from juggler.errors import ConfigError
from juggler.utils.storage import StorageManager

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TASKS_BASE_URL = "https://tasks.googleapis.com"
GOOGLE_TASKS_SCOPE = "https://www.googleapis.com/auth/tasks"

# Desktop clients are public clients; the secret comes from the client file or env.
GOOGLE_OAUTH_CLIENT_ID = "427291927957-9bon53siil65sgblb6hi846n53ddpte3.apps.googleusercontent.com"

GOOGLE_TASKS_LIST_NAME = "juggler"
GOOGLE_TASK_TITLE_PREFIX = "j:"

DEFAULT_TOKEN_EXPIRY_SECS = 3600
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
DEFAULT_CALLBACK_PORT = 8080
DEFAULT_CALLBACK_TIMEOUT = 300.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_MAX_RETRIES = 3

CLIENT_FILE_NAME = "google_oauth_client.json"
TODOS_FILE_NAME = "TODOs.yaml"


def get_data_dir(cli_override: Path | None = None) -> Path:
    """Resolve the data directory.

    Args:
        cli_override: Directory passed on the command line.

    Returns:
        The command-line directory, else $JUGGLER_DIR, else ~/.juggler.
    """
    if cli_override is not None:
        return cli_override
    env_override = os.environ.get("JUGGLER_DIR")
    if env_override:
        return Path(env_override)
    return Path.home() / ".juggler"


def load_client_secret(path: Path, expected_client_id: str) -> str | None:
    """Read a client secret from a downloaded OAuth client file.

    Both Google's `{"installed": {...}}` layout and a flat object are accepted.
    A file naming a different client id is ignored.

    Args:
        path: Path to the client JSON file.
        expected_client_id: Client id the secret must belong to.

    Returns:
        The client secret, or None if the file is missing or does not match.
    """
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable OAuth client file {path}: {e}")
        return None

    block = data.get("installed", data) if isinstance(data, dict) else {}
    found_id = block.get("client_id")
    secret = block.get("client_secret")
    if not secret:
        return None
    if found_id is not None and found_id != expected_client_id:
        logger.info(f"OAuth client file {path} is for another client id, ignoring it")
        return None
    logger.info(f"Loaded client secret from {path}")
    return secret


class Config:
    """Application settings resolved from the data directory."""

    def __init__(self, data_dir: Path | None = None) -> None:
        """Initialize configuration.

        Args:
            data_dir: Data directory override (see `get_data_dir`).

        Raises:
            ConfigError: If config.yaml cannot be parsed.
        """
        self.data_dir = get_data_dir(data_dir)
        self.storage = StorageManager(self.data_dir)
        try:
            self._settings: dict[str, Any] = self.storage.load_config()
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid {self.storage.config_file}: {e}") from e
        if not isinstance(self._settings, dict):
            raise ConfigError(f"Invalid {self.storage.config_file}: expected a mapping of settings")

    @property
    def todos_file(self) -> Path:
        return self.data_dir / TODOS_FILE_NAME

    @property
    def client_id(self) -> str:
        return self._settings.get("client_id") or GOOGLE_OAUTH_CLIENT_ID

    @property
    def client_secret(self) -> str | None:
        """Client secret, by precedence: env, config.yaml, client file."""
        env_secret = os.environ.get("JUGGLER_CLIENT_SECRET")
        if env_secret:
            return env_secret
        if self._settings.get("client_secret"):
            return self._settings["client_secret"]
        file_secret = load_client_secret(self.data_dir / CLIENT_FILE_NAME, self.client_id)
        return file_secret

    @property
    def max_workers(self) -> int:
        return max(1, int(self._settings.get("max_workers", DEFAULT_MAX_WORKERS)))

    @property
    def max_retries(self) -> int:
        return max(0, int(self._settings.get("max_retries", DEFAULT_MAX_RETRIES)))

    @property
    def callback_timeout(self) -> float:
        return float(self._settings.get("callback_timeout", DEFAULT_CALLBACK_TIMEOUT))
