"""Invoke tasks for working on spoolr.

Commands go through `uv run` so they use the locked dev environment.
"""

from __future__ import annotations

import shlex

from invoke import Collection, Context, task

SOURCES = ("src", "tests")


def _uv(ctx: Context, *args: str) -> None:
    """Run ``uv`` with ``args``, echoing the command line."""
    ctx.run(shlex.join(("uv", *args)), echo=True, pty=True)


@task(help={"dev": "Install the dev extra as well (default on)."})
def sync(ctx: Context, dev: bool = True) -> None:
    """Create or refresh the virtual environment."""
    _uv(ctx, "sync", *(("--extra", "dev") if dev else ()))


@task(
    help={
        "k": "Only run tests matching this pytest -k expression.",
        "options": "Extra pytest flags, passed through as-is.",
    }
)
def tests(ctx: Context, k: str = "", options: str = "") -> None:
    """Run the test suite.

    Args:
        ctx: Invoke execution context.
        k: Optional ``pytest -k`` selector.
        options: Additional pytest arguments.
    """
    selector = ("-k", k) if k else ()
    _uv(ctx, "run", "pytest", *selector, *shlex.split(options))


@task(help={"fix": "Let ruff rewrite fixable problems."})
def lint(ctx: Context, fix: bool = False) -> None:
    """Check formatting and lint rules with ruff."""
    if not fix:
        _uv(ctx, "run", "ruff", "format", "--check", *SOURCES)
    _uv(ctx, "run", "ruff", "check", *SOURCES, *(("--fix",) if fix else ()))


@task
def mypy(ctx: Context) -> None:
    """Type-check ``src``."""
    _uv(ctx, "run", "mypy", "src")


@task(pre=[lint, mypy, tests])
def ci(ctx: Context) -> None:
    """Run every check CI runs."""


namespace = Collection(sync, tests, lint, mypy, ci)
