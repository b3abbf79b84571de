"""
Explicit dotenv loader.

Rules:
- In production (`ENVIRONMENT=prod`): do not load `.env` / `.env.local`.
- Otherwise: load `.env` then `.env.local` (local overrides).

Must not import `mt5_client.config.config`; loading is an explicit call,
never an import side effect.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


def _is_prod_env() -> bool:
    return str(os.getenv("ENVIRONMENT", "dev") or "dev").strip().lower() == "prod"


def load_dotenv_files(*, root: Path | None = None) -> list[Path]:
    """
    Load dotenv files for local/dev usage.

    Returns the files that were loaded. In prod this is a no-op.
    """
    if _is_prod_env():
        return []

    root = root or Path.cwd()
    loaded = []

    env_path = root / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
        loaded.append(env_path)

    env_local_path = root / ".env.local"
    if env_local_path.exists():
        load_dotenv(dotenv_path=env_local_path, override=True)
        loaded.append(env_local_path)

    return loaded
