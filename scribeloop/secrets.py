"""
Credential storage for cloud LLM providers.

Keys are named api_key_<provider>. The file store keeps them in
~/.scribeloop/.env as API_KEY_<PROVIDER>=value lines; environment
variables of the same name (or the provider's usual variable, such as
GROQ_API_KEY) take precedence.

Usage:
    store = EnvFileSecretStore(config.env_file)
    store.save(api_key_name("claude"), b"sk-...")
    key = store.retrieve(api_key_name("claude")).decode()
"""

import os
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from .errors import SecretNotFound


# Conventional variable names checked after API_KEY_<PROVIDER>
PROVIDER_ENV_ALIASES = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "groq": "GROQ_API_KEY",
}


def api_key_name(provider: str) -> str:
    return f"api_key_{provider}"


def _env_name(key: str) -> str:
    return key.upper()


class SecretStore(Protocol):
    def save(self, key: str, value: bytes) -> None:
        ...

    def retrieve(self, key: str) -> bytes:
        ...

    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...


class MemorySecretStore:
    """In-process store; nothing is persisted."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._values: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def save(self, key: str, value: bytes) -> None:
        with self._lock:
            self._values[key] = bytes(value)

    def retrieve(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._values[key]
            except KeyError:
                raise SecretNotFound(f"No secret stored for '{key}'") from None

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._values


class EnvFileSecretStore:
    """
    Secrets in a .env file, overridable by environment variables.

    Lines that are not managed keys (comments, other variables) are
    preserved when the file is rewritten.
    """

    def __init__(self, env_file: Union[str, Path], environ: Optional[Dict[str, str]] = None):
        self.env_file = Path(env_file)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.Lock()

    def _read_lines(self) -> list:
        if not self.env_file.exists():
            return []
        with open(self.env_file, encoding="utf-8") as f:
            return [line.rstrip("\n") for line in f]

    def _read_values(self) -> Dict[str, str]:
        values = {}
        for line in self._read_lines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            name, value = line.split("=", 1)
            values[name.strip()] = value.strip().strip("'\"")
        return values

    def _write_value(self, name: str, value: Optional[str]) -> None:
        kept = [
            line for line in self._read_lines()
            if not ("=" in line and line.split("=", 1)[0].strip() == name)
        ]
        if value is not None:
            kept.append(f"{name}={value}")

        self.env_file.parent.mkdir(parents=True, exist_ok=True)
        # Owner-only before any key is written; os.open's mode covers a new file
        fd = os.open(self.env_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            os.chmod(self.env_file, 0o600)
            for line in kept:
                f.write(line + "\n")

    def _lookup(self, key: str) -> Optional[str]:
        name = _env_name(key)
        value = self.environ.get(name)
        if value:
            return value

        provider = key[len("api_key_"):] if key.startswith("api_key_") else ""
        alias = PROVIDER_ENV_ALIASES.get(provider)
        if alias and self.environ.get(alias):
            return self.environ[alias]

        with self._lock:
            return self._read_values().get(name) or None

    def save(self, key: str, value: bytes) -> None:
        text = bytes(value).decode("utf-8").strip()
        if "\n" in text:
            raise ValueError("Secret values cannot contain newlines")
        with self._lock:
            self._write_value(_env_name(key), text)

    def retrieve(self, key: str) -> bytes:
        value = self._lookup(key)
        if value is None:
            raise SecretNotFound(f"No secret stored for '{key}'. Set {_env_name(key)} or run 'scribeloop set-key'.")
        return value.encode("utf-8")

    def delete(self, key: str) -> None:
        with self._lock:
            if self.env_file.exists():
                self._write_value(_env_name(key), None)

    def exists(self, key: str) -> bool:
        return self._lookup(key) is not None
