""".gitignore-aware filtering helpers."""

import os
import logging
import threading
from typing import Dict, Optional, Set

import pathspec

logger = logging.getLogger(__name__)

_ALWAYS_SKIP_DIRS: Set[str] = {
    ".git", "node_modules", "__pycache__", ".venv", "venv", "env",
    ".mypy_cache", ".pytest_cache", ".tox", ".eggs",
    "dist", "build", ".next", ".cache", "coverage", "htmlcov",
}

_ALWAYS_SKIP_EXTENSIONS: Set[str] = {
    ".pyc", ".pyo", ".so", ".dylib", ".o", ".a", ".class",
    ".min.js", ".min.css", ".map", ".lock",
}

_gitignore_cache: Dict[str, Optional[pathspec.PathSpec]] = {}
_cache_lock = threading.Lock()


def load_gitignore(working_directory: str) -> Optional[pathspec.PathSpec]:
    """Load and cache .gitignore patterns for a project root.

    Returns a PathSpec matcher or None if no .gitignore exists.
    """
    with _cache_lock:
        if working_directory in _gitignore_cache:
            return _gitignore_cache[working_directory]

    spec = None
    gitignore_path = os.path.join(working_directory, ".gitignore")
    if os.path.isfile(gitignore_path):
        try:
            with open(gitignore_path, "r", encoding="utf-8", errors="replace") as f:
                spec = pathspec.PathSpec.from_lines("gitwildmatch", f)
        except (OSError, ValueError) as e:
            logger.debug(f"Failed to parse .gitignore: {e}")

    with _cache_lock:
        _gitignore_cache[working_directory] = spec
    return spec


def is_ignored(rel_path: str, is_dir: bool,
               gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check if a path should be ignored based on .gitignore + hardcoded skips."""
    name = os.path.basename(rel_path.rstrip("/"))
    if is_dir and name in _ALWAYS_SKIP_DIRS:
        return True
    parts = rel_path.split("/")
    if any(p in _ALWAYS_SKIP_DIRS for p in parts[:-1]):
        return True
    if not is_dir:
        if any(name.endswith(ext) for ext in _ALWAYS_SKIP_EXTENSIONS):
            return True
    if gitignore_spec:
        check_path = rel_path + "/" if is_dir else rel_path
        if gitignore_spec.match_file(check_path):
            return True
    return False


def invalidate_gitignore_cache(working_directory: Optional[str] = None) -> None:
    """Clear cached .gitignore specs. Call when .gitignore changes."""
    with _cache_lock:
        if working_directory:
            _gitignore_cache.pop(working_directory, None)
        else:
            _gitignore_cache.clear()
