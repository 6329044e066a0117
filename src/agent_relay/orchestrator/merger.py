"""
Branch Merger - folds subtask branches into the integration branch.

Branches are merged one at a time in submission order. A conflicting
merge is aborted and reported; later branches are still attempted.
Failed subtasks are skipped. A branch git refuses to merge for any other
reason is recorded as an error and does not stop the rest. Nothing is ever
force-merged.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from ..errors import VcsError
from ..vcs import GitRepository
from .parallel import SubtaskResult

logger = logging.getLogger(__name__)


@dataclass
class MergeConflict:
	"""A subtask branch that could not be merged cleanly."""
	subtask_id: str
	branch: str
	paths: list[str] = field(default_factory=list)
	message: str = ""


@dataclass
class MergeReport:
	"""What happened to each subtask branch."""
	target: str
	merged: list[str] = field(default_factory=list)
	conflicts: list[MergeConflict] = field(default_factory=list)
	skipped: list[str] = field(default_factory=list)
	errors: dict[str, str] = field(default_factory=dict)

	@property
	def clean(self) -> bool:
		return not self.conflicts and not self.skipped and not self.errors

	def conflict_for(self, subtask_id: str) -> MergeConflict | None:
		for conflict in self.conflicts:
			if conflict.subtask_id == subtask_id:
				return conflict
		return None


class BranchMerger:
	"""Sequential, continue-on-conflict merger over one repository checkout."""

	def __init__(self, repo: GitRepository):
		self.repo = repo

	async def merge_all(self, target: str, results: Iterable[SubtaskResult]) -> MergeReport:
		"""
		Merge every successful subtask branch into target.

		Args:
			target: Integration branch (checked out in the merger's repository)
			results: Subtask results in submission order

		Returns:
			MergeReport listing merged, conflicting, skipped and errored subtasks
		"""
		report = MergeReport(target=target)
		for result in results:
			if not result.succeeded:
				logger.info(f"Skipping {result.subtask_id} ({result.status.value})")
				report.skipped.append(result.subtask_id)
				continue

			try:
				outcome = await self.repo.merge(
					target, result.branch, message=f"Merge {result.subtask_id} into {target}",
				)
			except VcsError as e:
				logger.error(f"Could not merge {result.branch} into {target}: {e}")
				report.errors[result.subtask_id] = str(e)
				continue
			if outcome.success:
				report.merged.append(result.subtask_id)
				logger.info(f"Merged {result.branch} into {target}")
			else:
				report.conflicts.append(MergeConflict(
					subtask_id=result.subtask_id,
					branch=result.branch,
					paths=outcome.conflicting_paths,
					message=outcome.message,
				))
		return report

	async def cleanup_branches(self, report: MergeReport, results: Iterable[SubtaskResult]) -> list[str]:
		"""Delete branches that were merged; conflicting and skipped branches stay for inspection."""
		deleted = []
		merged = set(report.merged)
		for result in results:
			if result.subtask_id in merged and await self.repo.delete_branch(result.branch):
				deleted.append(result.branch)
		return deleted


def format_conflicts(report: MergeReport) -> str:
	"""Human-readable conflict summary for manual resolution."""
	if not report.conflicts and not report.errors:
		return "No merge conflicts."
	count = len(report.conflicts) + len(report.errors)
	lines = [f"{count} branch(es) could not be merged into {report.target}:", ""]
	for conflict in report.conflicts:
		lines.append(f"- {conflict.subtask_id} ({conflict.branch})")
		for path in conflict.paths:
			lines.append(f"    {path}")
	for subtask_id, message in report.errors.items():
		lines.append(f"- {subtask_id}: {message}")
	lines += [
		"",
		"Resolve manually:",
		f"  git checkout {report.target}",
		"  git merge <branch>",
		"  # fix conflicts, then git add and git commit",
	]
	return "\n".join(lines)
