"""Typed configuration variants, one per connector kind."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, HttpUrl


class _ConnectorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Reference to a secret held by the credential store, never the secret itself.
    credentials_ref: Optional[str] = Field(None, max_length=512)
    max_items_per_pull: int = Field(500, ge=1, le=5000)


class GitHubConfig(_ConnectorConfig):
    kind: Literal["github"] = "github"
    repo_owner: str = Field(..., min_length=1, max_length=100)
    repo_name: str = Field(..., min_length=1, max_length=100)
    branch: str = Field("main", min_length=1)
    include_commits: bool = True
    include_issues: bool = True
    include_pull_requests: bool = True


class JiraConfig(_ConnectorConfig):
    kind: Literal["jira"] = "jira"
    base_url: HttpUrl
    project_key: str = Field(..., pattern=r"^[A-Z][A-Z0-9_]+$")
    jql: Optional[str] = None
    include_comments: bool = True


class SlackConfig(_ConnectorConfig):
    kind: Literal["slack"] = "slack"
    channel_ids: list[str] = Field(..., min_length=1)
    include_threads: bool = True


ConnectorConfig = Annotated[
    Union[GitHubConfig, JiraConfig, SlackConfig], Field(discriminator="kind")
]
