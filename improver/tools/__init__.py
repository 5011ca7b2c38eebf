"""Adapters for the services the pipeline talks to."""

from .coverage import CoverageTool
from .generator import CliTestGenerator
from .git import LocalGit
from .github import GitHubClient, get_github_client

__all__ = [
    "CliTestGenerator",
    "CoverageTool",
    "GitHubClient",
    "LocalGit",
    "get_github_client",
]
