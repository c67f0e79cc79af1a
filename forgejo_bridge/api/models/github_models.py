"""GitHub-shaped response models and their mapping from Forgejo payloads."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GitHubUser(BaseModel):
    """Authenticated user, as GitHub's GET /user."""
    login: str
    id: int
    avatar_url: Optional[str] = None
    name: Optional[str] = Field(None, description="Forgejo full_name")
    email: Optional[str] = None

    @classmethod
    def from_forgejo(cls, data: Dict[str, Any]) -> "GitHubUser":
        return cls(
            login=data["login"],
            id=data["id"],
            avatar_url=data.get("avatar_url"),
            name=data.get("full_name"),
            email=data.get("email"),
        )


class GitHubOwnerRef(BaseModel):
    login: str
    id: int


class GitHubOwner(GitHubOwnerRef):
    avatar_url: Optional[str] = None


class GitHubRepository(BaseModel):
    """Single repository, as GitHub's GET /repos/{owner}/{repo}."""
    id: int
    name: str
    full_name: str
    private: bool
    html_url: Optional[str] = None
    description: Optional[str] = None
    ssh_url: Optional[str] = None
    clone_url: Optional[str] = None
    default_branch: Optional[str] = None
    owner: GitHubOwnerRef

    @classmethod
    def from_forgejo(cls, data: Dict[str, Any]) -> "GitHubRepository":
        owner = data.get("owner") or {}
        return cls(
            id=data["id"],
            name=data["name"],
            full_name=data["full_name"],
            private=data.get("private", False),
            html_url=data.get("html_url"),
            description=data.get("description"),
            ssh_url=data.get("ssh_url"),
            clone_url=data.get("clone_url"),
            default_branch=data.get("default_branch"),
            owner=GitHubOwnerRef(login=owner.get("login", ""), id=owner.get("id", 0)),
        )


class GitHubRepositoryListItem(BaseModel):
    """Repository entry of GitHub's GET /user/repos."""
    id: int
    name: str
    full_name: str
    private: bool
    html_url: Optional[str] = None
    description: Optional[str] = None
    fork: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    pushed_at: Optional[str] = Field(None, description="Forgejo has no push time; updated_at is used")
    ssh_url: Optional[str] = None
    clone_url: Optional[str] = None
    default_branch: Optional[str] = None
    owner: GitHubOwner

    @classmethod
    def from_forgejo(cls, data: Dict[str, Any]) -> "GitHubRepositoryListItem":
        owner = data.get("owner") or {}
        return cls(
            id=data["id"],
            name=data["name"],
            full_name=data["full_name"],
            private=data.get("private", False),
            html_url=data.get("html_url"),
            description=data.get("description"),
            fork=data.get("fork", False),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            pushed_at=data.get("updated_at"),
            ssh_url=data.get("ssh_url"),
            clone_url=data.get("clone_url"),
            default_branch=data.get("default_branch"),
            owner=GitHubOwner(
                login=owner.get("login", ""),
                id=owner.get("id", 0),
                avatar_url=owner.get("avatar_url"),
            ),
        )


class InstallationRepository(BaseModel):
    id: int
    name: str
    full_name: str
    private: bool
    owner: GitHubOwnerRef

    @classmethod
    def from_forgejo(cls, data: Dict[str, Any]) -> "InstallationRepository":
        owner = data.get("owner") or {}
        return cls(
            id=data["id"],
            name=data["name"],
            full_name=data["full_name"],
            private=data.get("private", False),
            owner=GitHubOwnerRef(login=owner.get("login", ""), id=owner.get("id", 0)),
        )


class InstallationRepositories(BaseModel):
    total_count: int
    repositories: List[InstallationRepository]


class GitHubCommitRef(BaseModel):
    sha: str
    url: Optional[str] = None


class GitHubBranch(BaseModel):
    name: str
    commit: GitHubCommitRef
    protected: bool = False

    @classmethod
    def from_forgejo(cls, data: Dict[str, Any]) -> "GitHubBranch":
        commit = data.get("commit") or {}
        return cls(
            name=data["name"],
            commit=GitHubCommitRef(sha=commit.get("id", ""), url=commit.get("url")),
            protected=data.get("protected", False),
        )
