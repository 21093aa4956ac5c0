"""
Loading the module that defines a TaskClock app.

The CLI accepts either a dotted module path (resolved through sys.path like
any import) or a path to a .py file. Nothing here guesses: the caller picks
the form and owns sys.path.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from types import ModuleType

from taskclock.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def setup_sys_path_from_cwd() -> str | None:
    """
    Put cwd on sys.path if it is a project root (has a packaging marker).

    Parent directories are not searched, so running inside a subpackage of a
    monorepo never pulls in the monorepo root.

    Returns cwd if it was added, None otherwise.
    """
    cwd = os.getcwd()
    is_root = any(os.path.exists(os.path.join(cwd, m)) for m in _PROJECT_MARKERS)
    if is_root and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def _synthetic_module_name(realpath: str) -> str:
    # Same file -> same name in every process
    digest = hashlib.sha256(realpath.encode()).hexdigest()[:12]
    return f'taskclock._dynamic.{digest}'


def import_file_path(file_path: str) -> ModuleType:
    """
    Import a module from a .py file, adding its directory to sys.path.

    A file that is already imported (under any name) is returned as-is so
    the app object it defines is not constructed twice.

    Raises:
        FileNotFoundError: the file does not exist
        ImportError: the file cannot be loaded as a module
    """
    realpath = os.path.realpath(file_path)
    if not os.path.exists(realpath):
        raise FileNotFoundError(f'Module file not found: {realpath}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == realpath:
            return mod

    parent_dir = os.path.dirname(realpath)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    module_name = _synthetic_module_name(realpath)
    spec = importlib.util.spec_from_file_location(module_name, realpath)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {realpath}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod
