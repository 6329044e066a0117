"""Git primitives used for task branches, commits and merges."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .errors import VcsError

logger = logging.getLogger(__name__)


async def run_git(args: list[str], cwd: Path, timeout: int = 60) -> tuple[str, str, int]:
	"""Run a git command and return (stdout, stderr, returncode)."""
	proc = await asyncio.create_subprocess_exec(
		"git", *args,
		stdout=asyncio.subprocess.PIPE,
		stderr=asyncio.subprocess.PIPE,
		cwd=str(cwd),
	)
	try:
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		proc.kill()
		await proc.wait()
		return ("", f"git {args[0]} timed out after {timeout}s", -1)
	return (
		stdout.decode().strip(),
		stderr.decode().strip(),
		proc.returncode or 0,
	)


def slugify(text: str, max_len: int = 40) -> str:
	"""Convert text to a branch-safe slug."""
	slug = text.lower()
	slug = re.sub(r"[^a-z0-9]+", "-", slug)
	slug = slug.strip("-")
	if len(slug) > max_len:
		slug = slug[:max_len].rstrip("-")
	return slug or "task"


@dataclass
class MergeOutcome:
	"""Result of merging one branch into another."""
	source: str
	target: str
	success: bool
	conflicting_paths: list[str] = field(default_factory=list)
	message: str = ""


class GitRepository:
	"""
	Thin async wrapper around one git working tree.

	Every operation runs ``git`` in ``path``. Merges never force: a
	conflicting merge is aborted and reported.
	"""

	def __init__(self, path: Path):
		self.path = Path(path)

	async def _git(self, *args: str, check: bool = True, timeout: int = 60) -> str:
		stdout, stderr, rc = await run_git(list(args), self.path, timeout=timeout)
		if check and rc != 0:
			raise VcsError(f"git {' '.join(args)} failed: {stderr or stdout}")
		return stdout

	async def root(self) -> Path:
		return Path(await self._git("rev-parse", "--show-toplevel"))

	async def current_branch(self) -> str:
		return await self._git("rev-parse", "--abbrev-ref", "HEAD")

	async def branch_exists(self, name: str) -> bool:
		_, _, rc = await run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], self.path)
		return rc == 0

	async def create_branch(self, name: str, base: str) -> None:
		"""Create a branch from base without checking it out."""
		await self._git("branch", name, base)
		logger.debug(f"Created branch {name} from {base}")

	async def checkout(self, name: str) -> None:
		await self._git("checkout", name)

	async def has_changes(self) -> bool:
		return bool(await self._git("status", "--porcelain"))

	async def commit(self, message: str) -> bool:
		"""
		Stage everything and commit.

		Returns:
			False when there was nothing to commit
		"""
		if not await self.has_changes():
			return False
		await self._git("add", "-A")
		await self._git("commit", "-m", message)
		return True

	async def merge(self, target: str, source: str, message: str | None = None) -> MergeOutcome:
		"""
		Merge source into target with a merge commit.

		On conflict the merge is aborted, leaving target unchanged, and the
		conflicting paths are reported.
		"""
		await self.checkout(target)
		msg = message or f"Merge {source} into {target}"
		stdout, stderr, rc = await run_git(["merge", "--no-ff", "-m", msg, source], self.path)
		if rc == 0:
			return MergeOutcome(source=source, target=target, success=True, message=stdout)

		conflicts_out, _, _ = await run_git(["diff", "--name-only", "--diff-filter=U"], self.path)
		conflicting = [line for line in conflicts_out.splitlines() if line.strip()]
		await run_git(["merge", "--abort"], self.path)
		if not conflicting and "CONFLICT" not in stdout + stderr:
			raise VcsError(f"git merge {source} into {target} failed: {stderr or stdout}")
		logger.warning(f"Merge conflict merging {source} into {target}: {conflicting}")
		return MergeOutcome(
			source=source,
			target=target,
			success=False,
			conflicting_paths=conflicting,
			message=stderr or stdout,
		)

	async def diff(self, base: str, head: str, stat: bool = False) -> str:
		args = ["diff", f"{base}...{head}"]
		if stat:
			args.append("--stat")
		return await self._git(*args)

	async def delete_branch(self, name: str, force: bool = False) -> bool:
		_, stderr, rc = await run_git(["branch", "-D" if force else "-d", name], self.path)
		if rc != 0:
			logger.debug(f"Could not delete branch {name}: {stderr}")
		return rc == 0

	async def push(self, branch: str, remote: str = "origin") -> None:
		await self._git("push", "-u", remote, branch, timeout=120)
