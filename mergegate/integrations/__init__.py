"""CI/VCS host integrations."""

from .github_actions_client import GitHubActionsClient
from .github_ci_backend import GitHubCIBackend

__all__ = ["GitHubActionsClient", "GitHubCIBackend"]
