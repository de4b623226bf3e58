"""
Dotenv loading for local runs of the worker and CLI.

Production (`ENVIRONMENT=prod`, the default) never reads dotenv files: broker and
database credentials come from the process environment only. Elsewhere `.env` is
loaded first, then `.env.local` overrides it, then `TRADE_LEDGER_ENV_FILE` if set.

Kept free of imports from `trade_ledger.config.config` so entrypoints can call
it before configuration models read the environment.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


def normalize_environment(value: str | None) -> str:
    """Lower-cased environment name; blank or unset means prod. Any other name counts as non-prod."""
    return (value or "").strip().lower() or "prod"


def is_prod_env() -> bool:
    return normalize_environment(os.getenv("ENVIRONMENT")) == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """
    Load dotenv files for dev usage and return the ones that were read.
    """
    if is_prod_env():
        return []

    root = repo_root or Path(__file__).resolve().parent.parent.parent
    candidates = [(root / ".env", False), (root / ".env.local", True)]

    explicit = os.getenv("TRADE_LEDGER_ENV_FILE")
    if explicit:
        candidates.append((Path(explicit), True))

    loaded = []
    for path, override in candidates:
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
