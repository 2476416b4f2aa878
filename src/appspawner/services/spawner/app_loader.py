"""Importing the application inside a worker or preloader process."""

from __future__ import annotations

import asyncio
import importlib
import os
import sys
from inspect import isawaitable
from pathlib import Path
from typing import Any, Callable, Mapping

Application = Callable[[Any], Any]


class AppLoadFailure(RuntimeError):
    """Raised inside the child when the application cannot be loaded."""


def load_application(root_path: str | Path, entrypoint: str, env: Mapping[str, str] | None = None) -> Application:
    """Import ``module:attribute`` from ``root_path`` and return the callable.

    The process switches its working directory to ``root_path`` and puts it
    first on ``sys.path``, the same way the app would see it when started by
    hand.
    """
    root = Path(root_path)
    if not root.is_dir():
        raise AppLoadFailure(f"application root {root} does not exist")

    for key, value in (env or {}).items():
        os.environ[str(key)] = str(value)

    os.chdir(root)
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))

    module_name, _, attr = entrypoint.partition(":")
    try:
        module = importlib.import_module(module_name)
    except Exception as e:
        raise AppLoadFailure(f"cannot import {module_name!r}: {e!r}") from e

    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise AppLoadFailure(f"{module_name!r} has no attribute {attr!r}") from None
    if not callable(target):
        raise AppLoadFailure(f"{entrypoint!r} is not callable")
    return target


def call_application(app: Application, payload: Any) -> Any:
    result = app(payload)
    if isawaitable(result):
        return asyncio.run(_await(result))
    return result


async def _await(awaitable: Any) -> Any:
    return await awaitable
