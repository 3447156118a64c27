from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values


class SecretNotFoundError(RuntimeError):
    pass


_DOTENV_CACHE: dict[Path, dict[str, str]] = {}


def _load_dotenv_file(path: Path) -> dict[str, str]:
    cached = _DOTENV_CACHE.get(path)
    if cached is not None:
        return cached
    data: dict[str, str] = {}
    if path.is_file():
        data = {k: (v or "") for k, v in dotenv_values(path).items() if k}
    _DOTENV_CACHE[path] = data
    return data


@dataclass(frozen=True)
class SecretsSource:
    """
    Secret lookup order:
    - environment variable
    - `<secrets_dir>/.env`
    - `<secrets_dir>/<NAME>` (mounted secret file)
    """

    secrets_dir: Path

    def get(self, name: str) -> Optional[str]:
        value = (os.getenv(name) or "").strip()
        if value:
            return value

        dotenv_value = (_load_dotenv_file(self.secrets_dir / ".env").get(name) or "").strip()
        if dotenv_value:
            return dotenv_value

        path = self.secrets_dir / name
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip() or None


def default_secrets_dir() -> Path:
    override = (os.getenv("CHATFLOW_SECRETS_DIR") or "").strip()
    if override:
        return Path(override).expanduser().resolve()
    # src/chatflow/secrets.py -> <repo_root>/../secrets
    repo_root = Path(__file__).resolve().parents[2]
    return (repo_root.parent / "secrets").resolve()


def get_secret(name: str, *, required: bool = False, secrets_dir: Path | None = None) -> Optional[str]:
    src = SecretsSource(secrets_dir=(secrets_dir or default_secrets_dir()))
    value = src.get(name)
    if required and not value:
        raise SecretNotFoundError(
            f"Missing secret {name}. Set env var {name} or create file {src.secrets_dir / name}"
        )
    return value
