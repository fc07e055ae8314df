from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field


class AuthenticatedUser(BaseModel):
    """The identity behind the access token."""

    model_config = ConfigDict(frozen=True)

    login: str = Field(description="The login of the user.")
    name: str | None = Field(default=None, description="The display name of the user.")
    email: str | None = Field(default=None, description="The public email of the user.")

    @classmethod
    def from_user(cls, user: dict[str, Any]) -> Self:
        return cls(login=user["login"], name=user.get("name"), email=user.get("email"))


class UserEmail(BaseModel):
    """An email address registered to the authenticated user."""

    email: str = Field(description="The email address.")
    verified: bool = Field(default=False, description="Whether the address has been verified.")
    primary: bool = Field(default=False, description="Whether this is the primary address.")

    @classmethod
    def from_email(cls, email: dict[str, Any]) -> Self:
        return cls(email=email["email"], verified=bool(email.get("verified")), primary=bool(email.get("primary")))


class Repository(BaseModel):
    """A repository the authenticated user can see."""

    model_config = ConfigDict(frozen=True)

    owner: str = Field(description="The login of the repository owner.")
    name: str = Field(description="The name of the repository.")
    fork: bool = Field(description="Whether the repository is a fork.")
    private: bool = Field(default=False, description="Whether the repository is private.")
    default_branch: str | None = Field(default=None, description="The default branch of the repository.")

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_repository(cls, repository: dict[str, Any]) -> Self:
        return cls(
            owner=repository["owner"]["login"],
            name=repository["name"],
            fork=bool(repository.get("fork")),
            private=bool(repository.get("private")),
            default_branch=repository.get("default_branch"),
        )


class DiffSize(BaseModel):
    """Lines changed by a commit."""

    model_config = ConfigDict(frozen=True)

    additions: int = Field(default=0, description="Lines added.")
    deletions: int = Field(default=0, description="Lines removed.")
    total: int = Field(default=0, description="Lines added plus lines removed.")

    @classmethod
    def from_stats(cls, stats: dict[str, Any] | None) -> Self | None:
        if not stats:
            return None

        return cls(additions=stats.get("additions", 0), deletions=stats.get("deletions", 0), total=stats.get("total", 0))


class CommitRecord(BaseModel):
    """A commit as seen while walking a repository."""

    model_config = ConfigDict(frozen=True)

    sha: str = Field(description="The SHA of the commit.")
    author_login: str | None = Field(default=None, description="The GitHub login linked to the commit author, if any.")
    author_email: str | None = Field(default=None, description="The email recorded on the commit.")
    author_name: str | None = Field(default=None, description="The name recorded on the commit.")
    timestamp: datetime = Field(description="When the commit was authored.")
    message: str = Field(default="", description="The commit message.")
    diff_size: DiffSize | None = Field(default=None, description="Lines changed, when detail statistics were fetched.")

    @classmethod
    def from_commit(cls, commit: dict[str, Any]) -> Self:
        git_commit: dict[str, Any] = commit.get("commit") or {}
        git_author: dict[str, Any] = git_commit.get("author") or {}
        linked_author: dict[str, Any] = commit.get("author") or {}

        return cls(
            sha=commit["sha"],
            author_login=linked_author.get("login"),
            author_email=git_author.get("email"),
            author_name=git_author.get("name"),
            timestamp=git_author["date"],
            message=git_commit.get("message") or "",
            diff_size=DiffSize.from_stats(commit.get("stats")),
        )

    def with_diff_size(self, diff_size: DiffSize | None) -> Self:
        return self.model_copy(update={"diff_size": diff_size})
