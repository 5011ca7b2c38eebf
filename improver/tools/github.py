"""GitHub API integration using PyGithub."""

import asyncio

import structlog
from github import Auth, Github, GithubException

from improver.config import get_settings
from improver.core.ports import PullRequestInfo, RepositoryInfo
from improver.errors import PipelineError, RepositoryLookupError

logger = structlog.get_logger()

GITHUB_HOST = "github.com"


def _describe(error: GithubException) -> str:
    data = error.data if isinstance(error.data, dict) else {}
    return f"{error.status} {data.get('message', '')}".strip()


class GitHubClient:
    """GitHub API client wrapper.

    PyGithub is synchronous, so calls are pushed to a worker thread to keep
    concurrent pipelines moving.
    """

    def __init__(self, token: str | None, host: str = GITHUB_HOST):
        self._token = token
        self.host = host
        self.github = Github(auth=Auth.Token(token)) if token else Github()

    async def get_repository(self, owner: str, name: str) -> RepositoryInfo:
        """Look up a repository.

        Args:
            owner: Account or organisation owning the repository
            name: Repository name

        Returns:
            Repository metadata with its clone URL and default branch

        Raises:
            RepositoryLookupError: The repository does not exist or is not accessible
        """
        logger.info("Fetching repository info", repo=f"{owner}/{name}")
        try:
            repo = await asyncio.to_thread(self.github.get_repo, f"{owner}/{name}")
        except GithubException as e:
            logger.error("Failed to get repository", repo=f"{owner}/{name}", error=_describe(e))
            raise RepositoryLookupError(f"Failed to get repository {owner}/{name}: {_describe(e)}") from e

        return RepositoryInfo(
            owner=repo.owner.login,
            name=repo.name,
            clone_url=repo.clone_url,
            default_branch=repo.default_branch,
        )

    async def create_pull_request(
        self, owner: str, repo: str, head: str, base: str, title: str, body: str
    ) -> PullRequestInfo:
        """Create a pull request.

        Args:
            owner: Repository owner
            repo: Repository name
            head: Source branch
            base: Target branch
            title: PR title
            body: PR description

        Returns:
            URL and number of the new pull request
        """
        logger.info("Creating pull request", repo=f"{owner}/{repo}", head=head, base=base)

        def _create():
            repo_obj = self.github.get_repo(f"{owner}/{repo}")
            return repo_obj.create_pull(title=title, body=body, head=head, base=base)

        try:
            pr = await asyncio.to_thread(_create)
        except GithubException as e:
            logger.error("Failed to create pull request", repo=f"{owner}/{repo}", error=_describe(e))
            raise PipelineError(f"Failed to create pull request: {_describe(e)}") from e

        logger.info("Pull request created", pr_number=pr.number, url=pr.html_url)
        return PullRequestInfo(url=pr.html_url, number=pr.number)

    def authenticated_clone_url(self, owner: str, repo: str) -> str:
        """HTTPS clone URL carrying the token. Never log this value."""
        if not self._token:
            return self.safe_clone_url(owner, repo)
        return f"https://x-access-token:{self._token}@{self.host}/{owner}/{repo}.git"

    def safe_clone_url(self, owner: str, repo: str) -> str:
        return f"https://{self.host}/{owner}/{repo}.git"


# Singleton instance
_github_client: GitHubClient | None = None


def get_github_client() -> GitHubClient:
    """Get or create GitHub client singleton."""
    global _github_client
    if _github_client is None:
        _github_client = GitHubClient(get_settings().github_token)
    return _github_client
