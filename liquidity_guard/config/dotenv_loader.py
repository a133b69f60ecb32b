"""
Dotenv loading for local runs.

Outside production the loader reads, in order:
    .env                      base values, never overriding the real environment
    .env.local                developer overrides
    $LIQUIDITY_GUARD_DOTENV   one explicit file, applied last

In production (`ENVIRONMENT=prod`, the default) nothing is loaded: the
process environment is the only source of secrets such as DATABASE_URL.

Must not import liquidity_guard.config.config (it is called from there).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

EXPLICIT_DOTENV_VAR = "LIQUIDITY_GUARD_DOTENV"


def is_production() -> bool:
    return (os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """
    Load dotenv files for dev / test environments.

    Returns:
        The files that were loaded, in order (empty in production)
    """
    if is_production():
        return []

    root = repo_root or Path(__file__).resolve().parents[2]
    candidates = [(root / ".env", False), (root / ".env.local", True)]
    explicit = os.getenv(EXPLICIT_DOTENV_VAR)
    if explicit:
        candidates.append((Path(explicit), True))

    loaded = []
    for path, override in candidates:
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
