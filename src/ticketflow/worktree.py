"""Worktree provisioning — one isolated, version-controlled directory per ticket.

The directory lives at ``<base>/<slug(title)>``. Provisioning is deliberately
not idempotent: an existing directory is a collision, and the ticket's
``worktree_path`` is the single record of which directory a ticket owns.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from pathlib import Path

from ticketflow.errors import InvalidBaseError, WorktreeExistsError, WorktreeInitError
from ticketflow.locks import PathWriteLocks
from ticketflow.models import Ticket

logger = logging.getLogger(__name__)

MAX_SLUG_LENGTH = 50

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    """Filesystem-safe slug: lowercase, hyphen-separated, trimmed, at most 50 chars."""
    slug = _NON_ALNUM_RE.sub("-", text.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].rstrip("-")


def render_readme(ticket: Ticket) -> str:
    lines = [f"# {ticket.title}", "", ticket.description, ""]
    if ticket.acceptance_criteria:
        lines.append("## Acceptance criteria")
        lines.append("")
        lines.extend(f"- {item}" for item in ticket.acceptance_criteria)
        lines.append("")
    lines.extend(
        [
            "---",
            f"Ticket ID: {ticket.id}",
            f"Type: {ticket.type.value}",
            f"Priority: {ticket.priority.value}",
            "",
        ]
    )
    return "\n".join(lines)


class WorktreeProvisioner:
    """Creates and removes per-ticket worktree directories."""

    def __init__(
        self,
        locks: PathWriteLocks,
        git_exe: str = "git",
        git_timeout: float = 30,
    ) -> None:
        self._locks = locks
        self._git_exe = git_exe
        self._git_timeout = git_timeout

    async def create(self, base_path: Path | str, ticket: Ticket) -> Path:
        """Create ``<base>/<slug>``, ``git init`` it and write a README scaffold.

        Returns:
            Absolute path of the new worktree.

        Raises:
            InvalidBaseError: base missing, not a directory, not writable, or
                the title yields an empty slug.
            WorktreeExistsError: the target directory already exists.
            WorktreeInitError: ``git init`` failed (the directory is removed).
        """
        base = Path(base_path).expanduser()
        if not base.is_dir():
            raise InvalidBaseError(f"Worktree base directory does not exist: {base}")
        if not os.access(base, os.W_OK | os.X_OK):
            raise InvalidBaseError(f"Worktree base directory is not writable: {base}")

        slug = slugify(ticket.title)
        if not slug:
            raise InvalidBaseError(f"Ticket title {ticket.title!r} produces an empty directory name")

        worktree = (base / slug).resolve()
        try:
            worktree.mkdir()
        except FileExistsError:
            raise WorktreeExistsError(str(worktree)) from None
        except OSError as e:
            raise InvalidBaseError(f"Cannot create worktree under {base}: {e}") from e

        try:
            rc, _, stderr = await self._run_git(worktree, "init")
        except (OSError, asyncio.TimeoutError) as e:
            await self.remove(worktree)
            raise WorktreeInitError(f"git init failed in {worktree}: {e}") from e
        if rc != 0:
            await self.remove(worktree)
            raise WorktreeInitError(f"git init failed in {worktree}: {stderr.strip()}")

        await self._locks.write_text(worktree / "README.md", render_readme(ticket))
        logger.info("Worktree created for ticket %s: %s", ticket.id, worktree)
        return worktree

    async def remove(self, path: Path | str) -> bool:
        """Delete a worktree directory tree. Returns False if it did not exist."""
        worktree = Path(path)
        if not worktree.is_dir():
            return False
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, shutil.rmtree, str(worktree))
        logger.info("Removed worktree %s", worktree)
        return True

    async def _run_git(self, cwd: Path, *args: str) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            self._git_exe,
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._git_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode or 0,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
