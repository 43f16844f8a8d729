"""
Configuration manager for the provider API key.

Stores the key encrypted in <data_dir>/config/ and stands in for the
platform keychain. An environment variable always takes precedence.
"""

import json
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from rich.console import Console
from rich.table import Table

from agentview.errors import KeychainError

console = Console()

API_KEY_NAME = "OPENAI_API_KEY"


class ConfigManager:
    """
    Manages encrypted storage of API keys.

    Directory structure:
        <base_dir>/.key     # Encryption key (600 permissions)
        <base_dir>/keys.enc # Encrypted keys
    """

    def __init__(self, base_dir: Path | None = None):
        """
        Initialize the config manager.

        Args:
            base_dir: Base directory for config storage.
                      Defaults to ~/.agentview/config/
        """
        if base_dir is None:
            base_dir = Path.home() / ".agentview" / "config"

        self.base_dir = base_dir
        self._fernet: Fernet | None = None
        self._cache: dict[str, str] | None = None

    def _get_fernet(self) -> Fernet:
        """Get or create the encryption key."""
        if self._fernet is not None:
            return self._fernet

        key_file = self.base_dir / ".key"
        try:
            if key_file.exists():
                key = key_file.read_bytes()
            else:
                self.base_dir.mkdir(parents=True, exist_ok=True)
                key = Fernet.generate_key()
                key_file.write_bytes(key)
                try:
                    key_file.chmod(0o600)
                except OSError:
                    pass
            self._fernet = Fernet(key)
        except (OSError, ValueError) as e:
            raise KeychainError(f"Could not open key store at {self.base_dir}: {e}") from e
        return self._fernet

    def _keys_path(self) -> Path:
        """Get path to the encrypted keys file."""
        return self.base_dir / "keys.enc"

    def _load_keys(self) -> dict[str, str]:
        """Load and decrypt stored keys. Unreadable data counts as empty."""
        if self._cache is not None:
            return self._cache

        path = self._keys_path()
        if not path.exists():
            self._cache = {}
            return {}

        try:
            decrypted = self._get_fernet().decrypt(path.read_bytes())
            keys = json.loads(decrypted)
        except (InvalidToken, json.JSONDecodeError, OSError):
            keys = {}
        self._cache = keys
        return keys

    def _save_keys(self, keys: dict[str, str]) -> None:
        """Encrypt and save keys."""
        encrypted = self._get_fernet().encrypt(json.dumps(keys).encode())
        path = self._keys_path()
        try:
            path.write_bytes(encrypted)
        except OSError as e:
            raise KeychainError(f"Could not write key store: {e}") from e
        try:
            path.chmod(0o600)
        except OSError:
            pass
        self._cache = keys

    def get(self, name: str) -> str | None:
        """
        Get a stored value.

        Checks environment first, then stored config.
        """
        if name in os.environ:
            return os.environ[name]
        return self._load_keys().get(name)

    def set(self, name: str, value: str) -> None:
        keys = dict(self._load_keys())
        keys[name] = value
        self._save_keys(keys)

    def delete(self, name: str) -> bool:
        """
        Delete a stored key.

        Returns:
            True if deleted, False if not found
        """
        keys = dict(self._load_keys())
        if name not in keys:
            return False
        del keys[name]
        self._save_keys(keys)
        return True

    def load_api_key(self) -> str | None:
        """The provider API key, or None if none is configured."""
        value = self.get(API_KEY_NAME)
        if value is None:
            return None
        return value.strip() or None

    def save_api_key(self, value: str) -> None:
        """
        Store the provider API key.

        Raises:
            KeychainError: If the key is empty or cannot be written
        """
        value = value.strip()
        if not value:
            raise KeychainError("Please enter a non-empty API key.")
        self.set(API_KEY_NAME, value)

    def delete_api_key(self) -> bool:
        return self.delete(API_KEY_NAME)

    def show_status(self) -> None:
        """Display current key status."""
        keys = self._load_keys()

        if not keys and API_KEY_NAME not in os.environ:
            console.print("[dim]No API key configured[/dim]")
            console.print()
            console.print("Run [cyan]agentview key set[/cyan] to add one")
            return

        table = Table(title="Configured API Keys")
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        table.add_column("Status")

        names = sorted(set(keys) | ({API_KEY_NAME} if API_KEY_NAME in os.environ else set()))
        for name in names:
            if name in os.environ and os.environ[name] != keys.get(name):
                status = "[yellow]env override[/yellow]"
            else:
                status = "[green]stored[/green]"
            table.add_row(name, mask_key(self.get(name) or ""), status)

        console.print(table)
        console.print()
        console.print(f"[dim]Config location: {self.base_dir}[/dim]")


def mask_key(key: str) -> str:
    """Show only the first and last four characters of a key."""
    if len(key) <= 8:
        return "•" * len(key)
    return f"{key[:4]}…{key[-4:]}"
