from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator

# Clone URLs always carry this suffix; the browsable URL is the clone URL without it.
GIT_URL_SUFFIX = ".git"


class RepositoryOrigin(str, Enum):
    """Where a RepositoryEntity was built from."""
    SEARCH = "search"
    DATABASE = "database"


class RepositoryEntity(BaseModel):
    """
    Immutable domain model representing a GitHub Repository.

    The same accessor surface is used whether the repository came from a
    search page or from a stored row; `origin` only records which one.
    """
    # Enforces immutability: once created, fields cannot be modified.
    model_config = ConfigDict(frozen=True)

    origin: RepositoryOrigin = Field(..., description="Whether this came from a search page or a stored row")
    id: str = Field(..., min_length=1, description="The unique GraphQL Node ID from GitHub")
    name_with_owner: str = Field(..., description="Repository name including the owner, e.g. rust-lang/rustfmt")
    git_url: str = Field(..., description="Clone URL, always ending with .git")
    rust_fraction: float = Field(0.0, ge=0.0, le=100.0, description="Percent of the code base written in Rust")
    latest_commit: str = Field("", description="Latest commit on the default branch, empty if unknown")
    is_fork: bool = Field(False, description="Whether the repository is a fork")
    is_locked: bool = Field(False, description="Whether the repository has been locked")
    archived_at: Optional[datetime] = Field(None, description="When the repository was archived, None if active")
    pushed_at: datetime = Field(..., description="Timestamp of the last push")
    updated_at: datetime = Field(..., description="Timestamp of the last update")

    @field_validator("git_url")
    @classmethod
    def _git_url_has_suffix(cls, value: str) -> str:
        if not value.endswith(GIT_URL_SUFFIX) or len(value) == len(GIT_URL_SUFFIX):
            raise ValueError(f"git_url must end with {GIT_URL_SUFFIX!r}: {value!r}")
        return value

    @computed_field
    @property
    def browse_url(self) -> str:
        return self.git_url[: -len(GIT_URL_SUFFIX)]

    def with_updates(self, **fields: Any) -> "RepositoryEntity":
        """
        Returns a refreshed copy of this repository. The id is the join key
        everywhere and can never change.
        """
        if "id" in fields and fields["id"] != self.id:
            raise ValueError("RepositoryEntity.id is immutable.")
        current = self.model_dump(exclude={"browse_url"})
        current.update(fields)
        return RepositoryEntity.model_validate(current)

    def __str__(self) -> str:
        return (
            f"{self.name_with_owner} ({self.browse_url})\n"
            f"  latest commit: {self.latest_commit or '<unknown>'}\n"
            f"  pushed at: {self.pushed_at.isoformat()}\n"
            f"  written in Rust: {self.rust_fraction:.2f}%"
        )


class ConfigFileEntity(BaseModel):
    """
    A configuration file found inside a repository checkout.
    Its durable identity is (repository id, latest commit, relative_path).
    """
    model_config = ConfigDict(frozen=True)

    relative_path: str = Field(..., min_length=1, description="Path relative to the checkout root")
    content: Dict[str, Any] = Field(default_factory=dict, description="Decoded document as JSON-like data")

    @field_validator("relative_path")
    @classmethod
    def _must_be_relative(cls, value: str) -> str:
        if PurePath(value).is_absolute():
            raise ValueError(f"relative_path must not be absolute: {value!r}")
        return value

    @classmethod
    def from_checkout(
        cls,
        checkout_root: Union[str, PurePath],
        absolute_path: Union[str, PurePath],
        content: Dict[str, Any],
    ) -> "ConfigFileEntity":
        """
        Builds the entity by stripping the checkout root off a discovered path.

        Raises:
            ValueError: If the path does not live under the checkout root.
        """
        relative = PurePath(absolute_path).relative_to(PurePath(checkout_root))
        return cls(relative_path=relative.as_posix(), content=content)


class RepositoryConfigFile(BaseModel):
    """A ConfigFileEntity bound to the repository and commit it was read from."""
    model_config = ConfigDict(frozen=True)

    repository_id: str = Field(..., min_length=1)
    latest_commit: str = Field(..., min_length=1)
    config: ConfigFileEntity
