"""
forkcorn/loader.py — Resolve "module:attribute" strings to WSGI callables.
"""

import os
import sys
import importlib
from typing import Callable


def load_app(app_path: str) -> Callable:
    """
    Load a WSGI application from a module:attribute string.
    Examples:
        "main:app" → from main import app
        "myproject.api:application" → from myproject.api import application
        "main:create_app()" → from main import create_app; create_app()
    If the loaded object has a `.wsgi_app` attribute (like Flask), use that instead.
    """
    if ":" not in app_path:
        raise ValueError(
            f"Invalid app path: {app_path!r}. "
            "Expected format: 'module:attribute' (e.g., 'main:app')"
        )

    module_path, attr_name = app_path.rsplit(":", 1)
    is_factory = attr_name.endswith("()")
    if is_factory:
        attr_name = attr_name[:-2]
    if not module_path or not attr_name.isidentifier():
        raise ValueError(f"Invalid app path: {app_path!r}")

    # Add current directory to sys.path if not already there
    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ImportError(f"Could not import module '{module_path}': {e}") from e

    try:
        app = getattr(module, attr_name)
    except AttributeError:
        raise AttributeError(
            f"Module '{module_path}' has no attribute '{attr_name}'"
        ) from None

    if is_factory:
        if not callable(app):
            raise TypeError(f"'{module_path}:{attr_name}' is not a callable factory")
        app = app()

    # If it's a Flask app (or similar), get the raw WSGI callable
    if hasattr(app, "wsgi_app"):
        return app.wsgi_app

    if not callable(app):
        raise TypeError(f"'{app_path}' is not callable")

    return app
