"""Tests for git primitives and worktree sandboxes (real git)."""

from pathlib import Path

import pytest

from agent_relay.errors import SandboxError, VcsError
from agent_relay.sandbox import SandboxSpec, WorktreeProvisioner
from agent_relay.vcs import GitRepository, slugify

from .helpers import git, init_git_repo


@pytest.fixture
def repo_path(tmp_path: Path) -> Path:
	path = tmp_path / "repo"
	init_git_repo(path)
	return path


class TestGitRepository:
	"""Branches, commits and merges."""

	@pytest.mark.asyncio
	async def test_commit_only_when_changed(self, repo_path):
		repo = GitRepository(repo_path)
		assert not await repo.commit("nothing")

		(repo_path / "new.txt").write_text("hello\n")
		assert await repo.has_changes()
		assert await repo.commit("add new.txt")
		assert not await repo.has_changes()
		assert git(repo_path, "log", "-1", "--format=%s") == "add new.txt"

	@pytest.mark.asyncio
	async def test_branches(self, repo_path):
		repo = GitRepository(repo_path)
		assert await repo.current_branch() == "main"
		await repo.create_branch("feature", "main")
		assert await repo.branch_exists("feature")
		assert not await repo.branch_exists("nope")
		assert await repo.delete_branch("feature")
		assert not await repo.branch_exists("feature")

	@pytest.mark.asyncio
	async def test_clean_merge(self, repo_path):
		repo = GitRepository(repo_path)
		await repo.create_branch("feature", "main")
		await repo.checkout("feature")
		(repo_path / "feature.txt").write_text("feature\n")
		await repo.commit("feature work")

		outcome = await repo.merge("main", "feature")

		assert outcome.success
		assert (repo_path / "feature.txt").exists()

	@pytest.mark.asyncio
	async def test_conflicting_merge_is_aborted(self, repo_path):
		repo = GitRepository(repo_path)
		await repo.create_branch("left", "main")
		await repo.create_branch("right", "main")

		await repo.checkout("left")
		(repo_path / "README.md").write_text("left\n")
		await repo.commit("left")
		await repo.checkout("right")
		(repo_path / "README.md").write_text("right\n")
		await repo.commit("right")

		assert (await repo.merge("main", "left")).success
		outcome = await repo.merge("main", "right")

		assert not outcome.success
		assert outcome.conflicting_paths == ["README.md"]
		# Target is left as it was after the first merge
		assert (repo_path / "README.md").read_text() == "left\n"
		assert not await repo.has_changes()

	@pytest.mark.asyncio
	async def test_failed_command_raises(self, repo_path):
		with pytest.raises(VcsError):
			await GitRepository(repo_path).checkout("does-not-exist")

	@pytest.mark.asyncio
	async def test_diff(self, repo_path):
		repo = GitRepository(repo_path)
		await repo.create_branch("feature", "main")
		await repo.checkout("feature")
		(repo_path / "README.md").write_text("# Changed\n")
		await repo.commit("change readme")

		diff = await repo.diff("main", "feature")
		assert "+# Changed" in diff


class TestWorktreeProvisioner:
	"""Sandboxes as git worktrees."""

	@pytest.mark.asyncio
	async def test_create_exec_destroy(self, repo_path, tmp_path):
		provisioner = WorktreeProvisioner(repo_path, tmp_path / "sandboxes")

		handle = await provisioner.create(SandboxSpec(name="t1", branch="relay/t1", base="main"))

		assert handle.path.exists()
		assert (handle.path / "README.md").exists()
		assert git(handle.path, "rev-parse", "--abbrev-ref", "HEAD") == "relay/t1"

		result = await provisioner.exec(handle, "echo hi > out.txt && cat out.txt")
		assert result.ok
		assert result.stdout.strip() == "hi"

		await provisioner.destroy(handle)
		assert not handle.path.exists()
		# The branch survives for merging
		assert await GitRepository(repo_path).branch_exists("relay/t1")

	@pytest.mark.asyncio
	async def test_sandboxes_are_isolated(self, repo_path, tmp_path):
		provisioner = WorktreeProvisioner(repo_path, tmp_path / "sandboxes")
		one = await provisioner.create(SandboxSpec(name="one", branch="b1", base="main"))
		two = await provisioner.create(SandboxSpec(name="two", branch="b2", base="main"))
		try:
			(one.path / "only-in-one.txt").write_text("x")
			assert not (two.path / "only-in-one.txt").exists()
			assert not (repo_path / "only-in-one.txt").exists()
		finally:
			await provisioner.destroy(one)
			await provisioner.destroy(two)

	@pytest.mark.asyncio
	async def test_existing_branch_reused(self, repo_path, tmp_path):
		provisioner = WorktreeProvisioner(repo_path, tmp_path / "sandboxes")
		await GitRepository(repo_path).create_branch("relay/again", "main")

		handle = await provisioner.create(SandboxSpec(name="again", branch="relay/again", base="main"))
		await provisioner.destroy(handle)

	@pytest.mark.asyncio
	async def test_bad_base_raises(self, repo_path, tmp_path):
		provisioner = WorktreeProvisioner(repo_path, tmp_path / "sandboxes")
		with pytest.raises(SandboxError):
			await provisioner.create(SandboxSpec(name="bad", branch="x", base="no-such-branch"))


def test_slugify():
	assert slugify("Fix the Login Bug!") == "fix-the-login-bug"
	assert slugify("!!!") == "task"
	assert len(slugify("word " * 30)) <= 40
