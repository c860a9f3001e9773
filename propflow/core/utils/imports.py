"""
Module import helpers for the CLI app locator.

The caller controls sys.path; the only convenience is adding cwd when it
holds a pyproject.toml.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from typing import Any

from propflow.core.logging import get_logger

logger = get_logger('imports')


def setup_sys_path_from_cwd() -> str | None:
    """Add cwd to sys.path if it contains pyproject.toml. Parents are not searched."""
    cwd = os.getcwd()
    if os.path.exists(os.path.join(cwd, 'pyproject.toml')) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def import_file_path(file_path: str) -> Any:
    """Import a standalone file under a stable synthetic module name."""
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    parent_dir = os.path.dirname(file_path)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    digest = hashlib.sha256(file_path.encode()).hexdigest()[:12]
    module_name = f'propflow._dynamic.{digest}'
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod
