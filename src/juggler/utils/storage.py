"""Storage for configuration, credentials and the local task file."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import keyring
import yaml
from keyring.errors import KeyringError, PasswordDeleteError
from pydantic import ValidationError

from juggler.errors import ConfigError
from juggler.models import LocalTask

logger = logging.getLogger(__name__)

REFRESH_TOKEN_KEY = "google-tasks"
KEYRING_SERVICE = "juggler"
KEYRING_USERNAME = "refresh-token"


class StorageManager:
    """Manages configuration and token storage in the data directory."""

    def __init__(self, data_dir: Path) -> None:
        """Initialize storage manager.

        Args:
            data_dir: Directory holding config.yaml and tokens.json.
        """
        self.data_dir = data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.config_file = self.data_dir / "config.yaml"
        self.tokens_file = self.data_dir / "tokens.json"

    def load_config(self) -> dict[str, Any]:
        """Load user configuration.

        Returns:
            Configuration dictionary, empty if no file exists.
        """
        if self.config_file.exists():
            with open(self.config_file) as f:
                return yaml.safe_load(f) or {}
        return {}

    def save_config(self, config: dict[str, Any]) -> None:
        """Save user configuration.

        Args:
            config: Configuration to save.
        """
        with open(self.config_file, "w") as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    def load_tokens(self) -> dict[str, str]:
        """Load stored tokens.

        Returns:
            Dictionary of token names to secrets.

        Raises:
            ConfigError: If the token file exists but cannot be read.
        """
        if not self.tokens_file.exists():
            return {}
        try:
            with open(self.tokens_file) as f:
                tokens = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Unreadable token file {self.tokens_file}: {e}") from e
        if not isinstance(tokens, dict):
            raise ConfigError(f"Unreadable token file {self.tokens_file}: expected a JSON object")
        return tokens

    def save_tokens(self, tokens: dict[str, str]) -> None:
        """Save tokens, readable by the current user only.

        Args:
            tokens: Dictionary of token names to secrets.
        """
        self.tokens_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.tokens_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(tokens, f)
        self.tokens_file.chmod(0o600)

    def get_token(self, name: str) -> str | None:
        """Get a stored token by name."""
        return self.load_tokens().get(name)

    def set_token(self, name: str, token: str) -> None:
        """Store a token under a name."""
        try:
            tokens = self.load_tokens()
        except ConfigError as e:
            logger.warning(f"{e}; replacing it")
            tokens = {}
        tokens[name] = token
        self.save_tokens(tokens)

    def delete_token(self, name: str) -> None:
        """Remove a token. Missing tokens are ignored, an unreadable file is removed."""
        try:
            tokens = self.load_tokens()
        except ConfigError as e:
            logger.warning(f"{e}; removing it")
            self.tokens_file.unlink(missing_ok=True)
            return
        if tokens.pop(name, None) is not None:
            self.save_tokens(tokens)


class CredentialStore:
    """Holds the Google Tasks refresh token in the token file."""

    def __init__(self, storage: StorageManager, key: str = REFRESH_TOKEN_KEY) -> None:
        self.storage = storage
        self.key = key

    def get(self) -> str | None:
        return self.storage.get_token(self.key)

    def set(self, secret: str) -> None:
        self.storage.set_token(self.key, secret)

    def delete(self) -> None:
        self.storage.delete_token(self.key)


class KeyringCredentialStore(CredentialStore):
    """Holds the refresh token in the OS credential store.

    Falls back to the token file when no keyring backend is usable, e.g. on a
    headless Linux box without a Secret Service. A token left in the file by
    an older install is still read, and is removed once the keyring takes
    over.
    """

    def __init__(
        self,
        storage: StorageManager,
        key: str = REFRESH_TOKEN_KEY,
        service: str = KEYRING_SERVICE,
        username: str = KEYRING_USERNAME,
    ) -> None:
        super().__init__(storage, key)
        self.service = service
        self.username = username

    def get(self) -> str | None:
        try:
            secret = keyring.get_password(self.service, self.username)
        except KeyringError as e:
            logger.debug(f"Keyring unavailable, reading {self.storage.tokens_file}: {e}")
            secret = None
        if secret is not None:
            return secret
        return super().get()

    def set(self, secret: str) -> None:
        try:
            keyring.set_password(self.service, self.username, secret)
        except KeyringError as e:
            logger.warning(f"Keyring unavailable, storing refresh token in {self.storage.tokens_file}: {e}")
            super().set(secret)
            return
        super().delete()

    def delete(self) -> None:
        try:
            keyring.delete_password(self.service, self.username)
        except PasswordDeleteError:
            # Nothing stored.
            pass
        except KeyringError as e:
            logger.debug(f"Keyring unavailable, clearing {self.storage.tokens_file} only: {e}")
        super().delete()


class TaskStore:
    """YAML file holding the local task list."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[LocalTask]:
        """Load tasks in file order.

        Returns:
            List of tasks, empty if the file does not exist yet.

        Raises:
            ConfigError: If the file is not a valid task list.
        """
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                items = yaml.safe_load(f) or []
            return [LocalTask.model_validate(item) for item in items]
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid task file {self.path}: {e}") from e

    def save(self, tasks: list[LocalTask]) -> None:
        """Write tasks through a temporary file so a crash never truncates the list.

        Args:
            tasks: Tasks to persist, in display order.
        """
        items = [task.to_store_dict() for task in tasks]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".todos-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(items, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved {len(tasks)} tasks to {self.path}")
