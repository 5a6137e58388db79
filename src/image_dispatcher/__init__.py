"""Top-level package entrypoints for :mod:`image_dispatcher`.

Importing exposes :func:`image_dispatcher.cli.run` so the console script can re-use it.
"""

from .cli import run

__all__ = ["run"]
