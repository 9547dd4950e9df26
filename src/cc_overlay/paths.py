from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "claude"
DEFAULT_CODE_DIR = Path.home() / ".claude"
PROJECTS_SUBDIR = "projects"
SESSION_INDEX_FILENAME = "sessions-index.json"
CLAUDE_CONFIG_ENV = "CLAUDE_CONFIG_DIR"
CODEX_HOME_ENV = "CODEX_HOME"
GEMINI_HOME_ENV = "GEMINI_HOME"


def discover_claude_paths(explicit_paths: Optional[List[Path]] = None) -> List[Path]:
    """Claude data roots holding a ``projects`` directory, most specific source first."""
    paths: List[Path] = []
    seen = set()

    def add(candidate: Path) -> None:
        candidate = candidate.expanduser().resolve()
        if _is_valid_claude_dir(candidate) and str(candidate) not in seen:
            paths.append(candidate)
            seen.add(str(candidate))

    for path in explicit_paths or []:
        add(path)
    if paths:
        return paths

    env_value = os.getenv(CLAUDE_CONFIG_ENV, "").strip()
    if env_value:
        for part in env_value.split(","):
            if part.strip():
                add(Path(part.strip()))
        if paths:
            return paths

    for candidate in (DEFAULT_CONFIG_DIR, DEFAULT_CODE_DIR):
        add(candidate)
    return paths


def claude_project_dirs(claude_paths: List[Path]) -> List[Path]:
    dirs: List[Path] = []
    for base in claude_paths:
        projects = base / PROJECTS_SUBDIR
        try:
            dirs.extend(sorted(p for p in projects.iterdir() if p.is_dir()))
        except OSError:
            continue
    return dirs


def codex_home(explicit: Optional[Path] = None) -> Path:
    if explicit:
        return explicit.expanduser()
    env_value = os.getenv(CODEX_HOME_ENV, "").strip()
    if env_value:
        return Path(env_value).expanduser()
    return Path.home() / ".codex"


def gemini_home(explicit: Optional[Path] = None) -> Path:
    if explicit:
        return explicit.expanduser()
    env_value = os.getenv(GEMINI_HOME_ENV, "").strip()
    if env_value:
        return Path(env_value).expanduser()
    return Path.home() / ".gemini"


def _is_valid_claude_dir(path: Path) -> bool:
    if not path.exists() or not path.is_dir():
        return False
    projects_dir = path / PROJECTS_SUBDIR
    return projects_dir.exists() and projects_dir.is_dir()


__all__ = [
    "DEFAULT_CODE_DIR",
    "DEFAULT_CONFIG_DIR",
    "PROJECTS_SUBDIR",
    "SESSION_INDEX_FILENAME",
    "claude_project_dirs",
    "codex_home",
    "discover_claude_paths",
    "gemini_home",
]
