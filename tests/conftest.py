"""Pytest configuration for test discovery, env, and fixtures.

This file ensures that:
- `src/` is importable
- Integration tests can read credentials from `conf/secrets.yml`
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Ensure src directory is in path for imports
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))


def _load_secrets_into_env() -> None:
    """Load secrets from conf/secrets.yml into environment if not set.

    Only sets variables that are currently unset to avoid overriding user-provided
    environment. This lets the Milvus integration tests run locally without
    exporting credentials by hand.
    """
    secrets_path = repo_root / "conf" / "secrets.yml"
    if not secrets_path.exists():
        return

    import yaml  # type: ignore[import-untyped]

    data = yaml.safe_load(secrets_path.read_text()) or {}

    for env_key in ("MILVUS_URI", "MILVUS_TOKEN", "OPENAI_API_KEY"):
        if os.environ.get(env_key):
            continue
        value = data.get(env_key)
        if value:
            os.environ[env_key] = str(value)


def pytest_sessionstart(session: object) -> None:
    _load_secrets_into_env()
