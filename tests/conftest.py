"""Shared fixtures and payload builders."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest

from scripts.pr_status import (
    PullRequestDetail,
    Settings,
    UserProfile,
    parse_detail,
    parse_summary,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
ORG = "acme"


def pr_payload(
    number: int = 42,
    repo: str = "api",
    title: str = "Add retries to the uploader",
    body: str | None = "Adds retries.\n\nMore detail here.",
    author: str = "octocat",
    comments: int = 2,
    updated_at: str = "2026-10-18T09:00:00Z",
) -> dict:
    return {
        "number": number,
        "html_url": f"https://github.com/{ORG}/{repo}/pull/{number}",
        "title": title,
        "user": {"login": author},
        "comments": comments,
        "created_at": "2026-10-15T08:00:00Z",
        "updated_at": updated_at,
        "body": body,
    }


def detail_payload(
    branch: str = "feature/ch123-retries",
    changed_files: int = 3,
    mergeable_state: str = "clean",
    **kwargs: object,
) -> dict:
    return {
        **pr_payload(**kwargs),
        "changed_files": changed_files,
        "head": {"ref": branch},
        "mergeable_state": mergeable_state,
    }


def make_detail(**kwargs: object) -> PullRequestDetail:
    data = detail_payload(**kwargs)
    return PullRequestDetail(
        **parse_summary(data).model_dump(),
        **parse_detail(data),
    )


def make_user(username: str = "octocat", name: str = "The Octocat") -> UserProfile:
    return UserProfile(
        username=username,
        name=name,
        avatar=f"https://avatars.example.com/{username}",
        url=f"https://github.com/{username}",
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        GITHUB_TOKEN="test-token",
        GITHUB_ORG=ORG,
        GITHUB_API_URL="https://api.github.test",
        SLACK_CHANNEL="#pull-requests",
        SLACK_WEBHOOK="https://hooks.slack.com/test",
        CLUBHOUSE_ACCOUNT="acme",
        SCHEDULE=None,
    )
