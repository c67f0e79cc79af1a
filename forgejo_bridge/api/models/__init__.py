from forgejo_bridge.api.models.github_models import (
    GitHubBranch,
    GitHubRepository,
    GitHubRepositoryListItem,
    GitHubUser,
    InstallationRepositories,
    InstallationRepository,
)
from forgejo_bridge.api.models.webhook_models import (
    MASKED_SECRET,
    CreateHookRequest,
    HookConfig,
    HookResponse,
)

__all__ = [
    "GitHubBranch",
    "GitHubRepository",
    "GitHubRepositoryListItem",
    "GitHubUser",
    "InstallationRepositories",
    "InstallationRepository",
    "MASKED_SECRET",
    "CreateHookRequest",
    "HookConfig",
    "HookResponse",
]
