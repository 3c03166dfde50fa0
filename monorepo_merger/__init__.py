"""
monorepo_merger package

Provides the CLI entrypoint (`python -m monorepo_merger`) and the analysis,
planning and apply helpers for merging package repositories into one workspace.
"""

from .cli import main

__all__ = ["main"]
