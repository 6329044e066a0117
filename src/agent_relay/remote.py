"""Remote code host client for opening change requests (GitHub pull requests)."""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

from github import Auth, Github
from github.GithubException import GithubException, RateLimitExceededException

from .errors import RemoteAuthError, RemoteHostError, RemoteNotFoundError, RemoteRateLimitedError

logger = logging.getLogger(__name__)


@dataclass
class ChangeRequest:
	"""An opened pull request."""
	number: int
	url: str
	head: str
	base: str


def _map_github_error(e: GithubException, what: str) -> RemoteHostError:
	if isinstance(e, RateLimitExceededException):
		return RemoteRateLimitedError(f"GitHub rate limit exceeded while {what}")
	message = ""
	if isinstance(e.data, dict):
		message = str(e.data.get("message", ""))
	if e.status == 404:
		return RemoteNotFoundError(f"Not found while {what}: {message}")
	if e.status == 403 and "rate limit" in message.lower():
		return RemoteRateLimitedError(f"GitHub rate limit exceeded while {what}")
	if e.status in (401, 403):
		return RemoteAuthError(f"GitHub rejected credentials while {what}: {message}")
	return RemoteHostError(f"GitHub error {e.status} while {what}: {message}")


class GitHubHost:
	"""
	Opens pull requests on one GitHub repository.

	Args:
		repo: "owner/name"
		token: API token; falls back to the GITHUB_TOKEN environment variable
	"""

	def __init__(self, repo: str, token: Optional[str] = None):
		self.repo_name = repo
		self._token = token
		self._github: Optional[Github] = None

	@property
	def token(self) -> Optional[str]:
		return self._token or os.getenv("GITHUB_TOKEN")

	def is_configured(self) -> bool:
		return self.token is not None

	def _get_github(self) -> Github:
		if self._github is None:
			token = self.token
			if not token:
				raise RemoteAuthError("GitHub token not configured (set GITHUB_TOKEN)")
			self._github = Github(auth=Auth.Token(token))
		return self._github

	def _create_pull(self, head: str, base: str, title: str, body: str) -> ChangeRequest:
		try:
			repo = self._get_github().get_repo(self.repo_name)
			pr = repo.create_pull(title=title, body=body, head=head, base=base)
		except GithubException as e:
			raise _map_github_error(e, f"opening a pull request for {head}") from e
		logger.info(f"Opened pull request #{pr.number} for {head} -> {base}")
		return ChangeRequest(number=pr.number, url=pr.html_url, head=head, base=base)

	async def create_change_request(self, head: str, base: str, title: str, body: str = "") -> ChangeRequest:
		"""Open a pull request from head into base."""
		return await asyncio.to_thread(self._create_pull, head, base, title, body)
