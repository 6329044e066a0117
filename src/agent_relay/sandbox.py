"""
Sandbox provisioning.

Every sequential task and every parallel subtask runs inside its own
sandbox. The default provisioner isolates work in git worktrees: each
sandbox is a separate checkout on its own branch, so concurrent agents
never share a working directory.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .errors import SandboxError
from .vcs import run_git

logger = logging.getLogger(__name__)


@dataclass
class SandboxSpec:
	"""What to provision."""
	name: str
	branch: str
	base: str


@dataclass
class SandboxHandle:
	"""A provisioned sandbox."""
	name: str
	path: Path
	branch: str


@dataclass
class ExecResult:
	stdout: str
	stderr: str
	returncode: int

	@property
	def ok(self) -> bool:
		return self.returncode == 0


class SandboxProvisioner(Protocol):
	"""Create, use and destroy isolated execution environments."""

	async def create(self, spec: SandboxSpec) -> SandboxHandle: ...

	async def exec(self, handle: SandboxHandle, command: str, timeout: float = 300) -> ExecResult: ...

	async def destroy(self, handle: SandboxHandle) -> None: ...


class WorktreeProvisioner:
	"""
	Sandboxes backed by git worktrees of one repository.

	Args:
		repo_root: Repository the worktrees are created from
		sandbox_root: Directory holding the worktree checkouts
	"""

	def __init__(self, repo_root: Path, sandbox_root: Optional[Path] = None):
		self.repo_root = Path(repo_root)
		self.sandbox_root = Path(sandbox_root) if sandbox_root else self.repo_root.parent / f".{self.repo_root.name}-sandboxes"

	async def create(self, spec: SandboxSpec) -> SandboxHandle:
		"""Create a worktree on a new branch cut from spec.base."""
		self.sandbox_root.mkdir(parents=True, exist_ok=True)
		path = self.sandbox_root / spec.name
		if path.exists():
			raise SandboxError(f"Sandbox path already exists: {path}")

		stdout, stderr, rc = await run_git(
			["worktree", "add", str(path), "-b", spec.branch, spec.base],
			self.repo_root,
		)
		if rc != 0 and "already exists" in stderr:
			# Branch left behind by an earlier attempt
			stdout, stderr, rc = await run_git(
				["worktree", "add", str(path), spec.branch],
				self.repo_root,
			)
		if rc != 0:
			raise SandboxError(f"Failed to create sandbox {spec.name}: {stderr}")

		logger.info(f"Created sandbox {spec.name} at {path} on {spec.branch}")
		return SandboxHandle(name=spec.name, path=path, branch=spec.branch)

	async def exec(self, handle: SandboxHandle, command: str, timeout: float = 300) -> ExecResult:
		"""Run a shell command inside the sandbox."""
		proc = await asyncio.create_subprocess_shell(
			command,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
			cwd=str(handle.path),
		)
		try:
			stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
		except asyncio.TimeoutError:
			proc.kill()
			await proc.wait()
			return ExecResult(stdout="", stderr=f"Command timed out after {timeout}s", returncode=-1)
		return ExecResult(
			stdout=stdout.decode(errors="replace"),
			stderr=stderr.decode(errors="replace"),
			returncode=proc.returncode or 0,
		)

	async def destroy(self, handle: SandboxHandle) -> None:
		"""Remove the worktree. The branch is kept for merging."""
		_, stderr, rc = await run_git(
			["worktree", "remove", "--force", str(handle.path)],
			self.repo_root,
		)
		if rc != 0:
			logger.warning(f"git worktree remove failed for {handle.name}: {stderr}")
			if handle.path.exists():
				shutil.rmtree(handle.path, ignore_errors=True)
		await run_git(["worktree", "prune"], self.repo_root)
		logger.info(f"Destroyed sandbox {handle.name}")
