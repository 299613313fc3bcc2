"""
.env loading for local and paper runs.

Files are applied in order: ``.env``, ``.env.local``, then the file named by
``AUTOTRADER_ENV_FILE`` if set. A later file overrides an earlier one, but no
file overrides a variable that was already present in the process
environment. With ENVIRONMENT=prod nothing is loaded.

Must not import ``autotrader.config.config``: it runs before settings exist.
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import dotenv_values

EXPLICIT_ENV_VAR = "AUTOTRADER_ENV_FILE"


def _is_prod_env() -> bool:
    return (os.getenv("ENVIRONMENT") or "dev").strip().lower() == "prod"


def _candidate_files(root: Path) -> list[Path]:
    files = [root / ".env", root / ".env.local"]
    explicit = os.getenv(EXPLICIT_ENV_VAR)
    if explicit:
        files.append(Path(explicit).expanduser())
    return files


def load_dotenv_files(*, repo_root: Path | None = None) -> list[Path]:
    """
    Apply dotenv files to ``os.environ``.

    Args:
        repo_root: Directory holding ``.env``; defaults to the working directory

    Returns:
        The files that existed and were applied.
    """
    if _is_prod_env():
        return []

    preset = set(os.environ)
    loaded: list[Path] = []
    for path in _candidate_files(repo_root or Path.cwd()):
        if not path.is_file():
            continue
        for key, value in dotenv_values(path).items():
            if value is None or key in preset:
                continue
            os.environ[key] = value
        loaded.append(path)
    return loaded
