#!/usr/bin/env python3
"""Post a status summary of every open pull request in an org to Slack."""
from __future__ import annotations

import argparse
import json
import re
import sys
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import cast

import requests
from croniter import croniter
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

DEFAULT_GITHUB_API_URL = "https://api.github.com"
CLUBHOUSE_STORY_URL = "https://app.clubhouse.io/{account}/story/"
DEFAULT_HTTP_TIMEOUT = 30
PER_PAGE = 100
PR_DEADLINE_DAYS = 2
REPO_URL_SEGMENT = 4
DRAFT_MERGEABLE_STATE = "draft"
APPROVED_REVIEW_STATE = "APPROVED"
HTTP_ERROR_THRESHOLD = 400

CH_COMMENT_REGEX = re.compile(r"\[ch(\d+)\]")
CH_BRANCH_REGEX = re.compile(r"ch(\d+)")

NO_UPDATES_WARNING = f"_No updates in over {PR_DEADLINE_DAYS} days!_"
NO_DESCRIPTION_WARNING = "_Please add a description!_"
NO_TICKET_WARNING = "_Please link to a clubhouse card!_"

JSONDict = dict[str, object]
JSONList = list[object]


class MalformedPayloadError(TypeError):
    """Raised when a provider payload is missing a field or has the wrong shape."""

    def __init__(self, context: str, value: object) -> None:
        """Create a malformed payload error."""
        super().__init__(
            f"Unexpected value for {context}: {type(value).__name__}",
        )


class GitHubRequestError(RuntimeError):
    """Raised when a GitHub REST request fails."""

    def __init__(self, status_code: int, text: str) -> None:
        """Create a GitHub request error."""
        self.status_code = status_code
        super().__init__(f"GitHub request failed ({status_code}): {text}")


class SlackWebhookError(RuntimeError):
    """Raised when a Slack webhook call fails."""

    def __init__(self, status_code: int, text: str) -> None:
        """Create a Slack webhook error."""
        super().__init__(f"Slack webhook failed ({status_code}): {text}")


class RunInProgressError(RuntimeError):
    """Raised when a run is triggered while another one is still going."""

    def __init__(self) -> None:
        """Create a run-in-progress error."""
        super().__init__("A pull request status run is already in progress.")


def ensure_dict(value: object, context: str) -> JSONDict:
    """Return a dictionary value or raise."""
    if isinstance(value, dict):
        return cast("JSONDict", value)
    raise MalformedPayloadError(context, value)


def ensure_list(value: object, context: str) -> JSONList:
    """Return a list value or raise."""
    if isinstance(value, list):
        return cast("JSONList", value)
    raise MalformedPayloadError(context, value)


def ensure_str(value: object, context: str, default: str | None = None) -> str:
    """Return a string value, or the default when the value is null."""
    if isinstance(value, str):
        return value
    if value is None and default is not None:
        return default
    raise MalformedPayloadError(context, value)


def ensure_int(value: object, context: str) -> int:
    """Return a non-negative integer value or raise."""
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    raise MalformedPayloadError(context, value)


def ensure_datetime(value: object, context: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware datetime."""
    text = ensure_str(value, context)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedPayloadError(context, value) from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class Settings(BaseSettings):
    """Environment-backed settings for the status run."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    github_token: str | None = Field(default=None, alias="GITHUB_TOKEN")
    github_org: str = Field(alias="GITHUB_ORG")
    github_api_url: str = Field(
        default=DEFAULT_GITHUB_API_URL,
        alias="GITHUB_API_URL",
    )
    slack_channel: str = Field(alias="SLACK_CHANNEL")
    slack_webhook: str | None = Field(default=None, alias="SLACK_WEBHOOK")
    clubhouse_account: str = Field(alias="CLUBHOUSE_ACCOUNT")
    schedule: str | None = Field(default=None, alias="SCHEDULE")
    http_timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, alias="HTTP_TIMEOUT")

    @property
    def clubhouse_url(self) -> str:
        """Base URL that a story id is appended to."""
        return CLUBHOUSE_STORY_URL.format(account=self.clubhouse_account)


def get_settings() -> Settings:
    """Load settings from environment variables."""
    return Settings.model_validate({})


def log_elapsed(message: str, start: float, **fields: object) -> None:
    """Log elapsed time with additional fields."""
    elapsed = f"{time.perf_counter() - start:.2f}s"
    logger.info(
        "{message} (elapsed {elapsed})",
        message=message,
        elapsed=elapsed,
        **fields,
    )


class PullRequestSummary(BaseModel):
    """Open pull request as returned by the search endpoint."""

    model_config = ConfigDict(frozen=True)

    id: int
    url: str
    repo: str
    title: str
    author: str
    comment_count: int
    created_at: datetime
    updated_at: datetime
    body: str
    summary: str


class PullRequestDetail(PullRequestSummary):
    """Pull request merged with the fields only the detail endpoint has."""

    files_changed: int
    branch: str
    is_draft: bool


class Review(BaseModel):
    """Approved review on a pull request."""

    model_config = ConfigDict(frozen=True)

    approved_by: str


class Comment(BaseModel):
    """Issue comment, used only as a ticket link scan target."""

    model_config = ConfigDict(frozen=True)

    author: str
    body: str


class UserProfile(BaseModel):
    """GitHub user profile shown as the Slack attachment author."""

    model_config = ConfigDict(frozen=True)

    username: str
    name: str
    avatar: str
    url: str


class TicketLink(BaseModel):
    """Clubhouse story referenced by a pull request."""

    model_config = ConfigDict(frozen=True)

    story_id: str
    url: str


class StatusColor(str, Enum):
    """Slack attachment colors for each pull request status."""

    OPEN = "#aaa"
    PAST_DEADLINE = "warning"
    INVALID = "danger"
    APPROVED = "good"


class Classification(BaseModel):
    """Warnings, info lines and color derived for one pull request."""

    model_config = ConfigDict(frozen=True)

    warnings: tuple[str, ...] = ()
    infos: tuple[str, ...] = ()
    color: StatusColor = StatusColor.OPEN


class RunStats(BaseModel):
    """Counters reported at the end of a run."""

    total: int = 0
    posted: int = 0
    skipped_drafts: int = 0


def summarize_body(body: str) -> str:
    """Return the first line of the trimmed body, or an empty string."""
    return body.strip().split("\n")[0].rstrip("\r")


def extract_repo_name(url: str) -> str:
    """Extract the repository name from a pull request HTML URL."""
    parts = url.split("/")
    if len(parts) <= REPO_URL_SEGMENT or not parts[REPO_URL_SEGMENT]:
        raise MalformedPayloadError("html_url", url)
    return parts[REPO_URL_SEGMENT]


def parse_summary(data: JSONDict) -> PullRequestSummary:
    """Parse a pull request from a search or detail payload."""
    url = ensure_str(data.get("html_url"), "html_url")
    body = ensure_str(data.get("body"), "body", "")
    user = ensure_dict(data.get("user"), "user")
    return PullRequestSummary(
        id=ensure_int(data.get("number"), "number"),
        url=url,
        repo=extract_repo_name(url),
        title=ensure_str(data.get("title"), "title"),
        author=ensure_str(user.get("login"), "user.login"),
        comment_count=ensure_int(data.get("comments"), "comments"),
        created_at=ensure_datetime(data.get("created_at"), "created_at"),
        updated_at=ensure_datetime(data.get("updated_at"), "updated_at"),
        body=body,
        summary=summarize_body(body),
    )


def parse_detail(data: JSONDict) -> JSONDict:
    """Parse the fields only present on the pull request detail payload."""
    head = ensure_dict(data.get("head"), "head")
    return {
        "files_changed": ensure_int(data.get("changed_files"), "changed_files"),
        "branch": ensure_str(head.get("ref"), "head.ref"),
        "is_draft": data.get("mergeable_state") == DRAFT_MERGEABLE_STATE,
    }


def parse_review(data: JSONDict) -> Review:
    """Parse an approved review payload."""
    user = ensure_dict(data.get("user"), "review.user")
    return Review(approved_by=ensure_str(user.get("login"), "review.user.login"))


def parse_comment(data: JSONDict) -> Comment:
    """Parse an issue comment payload."""
    user = ensure_dict(data.get("user"), "comment.user")
    return Comment(
        author=ensure_str(user.get("login"), "comment.user.login"),
        body=ensure_str(data.get("body"), "comment.body", ""),
    )


def parse_user(data: JSONDict) -> UserProfile:
    """Parse a user payload, falling back to the login for the name."""
    login = ensure_str(data.get("login"), "login")
    name = ensure_str(data.get("name"), "name", "")
    return UserProfile(
        username=login,
        name=name or login,
        avatar=ensure_str(data.get("avatar_url"), "avatar_url", ""),
        url=ensure_str(data.get("html_url"), "html_url", ""),
    )


def match_ticket_link(
    text: str,
    regex: re.Pattern[str],
    tracker_url: str,
) -> TicketLink | None:
    """Return a ticket link for the first regex match in the text."""
    match = regex.search(text)
    if match is None:
        return None
    story_id = match.group(1)
    return TicketLink(story_id=story_id, url=f"{tracker_url}{story_id}")


def extract_ticket_link(
    detail: PullRequestDetail,
    fetch_comments: Callable[[], Iterable[Comment]],
    tracker_url: str,
) -> TicketLink | None:
    """Find a ticket link in the branch, then the body, then the comments.

    Comments are only fetched when neither the branch name nor the body
    carries a reference.
    """
    link = match_ticket_link(detail.branch, CH_BRANCH_REGEX, tracker_url)
    if link is not None:
        return link

    link = match_ticket_link(detail.body, CH_COMMENT_REGEX, tracker_url)
    if link is not None:
        return link

    for comment in fetch_comments():
        link = match_ticket_link(comment.body, CH_COMMENT_REGEX, tracker_url)
        if link is not None:
            return link
    return None


class UserCache:
    """Read-through cache of user profiles keyed by login.

    Entries never expire. A miss stores a future before fetching, so callers
    asking for the same login while the fetch is in flight wait on it instead
    of fetching again. A failed fetch is not cached.
    """

    def __init__(self) -> None:
        """Create an empty cache."""
        self._lock = threading.Lock()
        self._entries: dict[str, Future[UserProfile]] = {}

    def __contains__(self, username: object) -> bool:
        """Return True when a profile for the login has been resolved."""
        with self._lock:
            future = self._entries.get(cast("str", username))
        return future is not None and future.done() and future.exception() is None

    def get_or_fetch(
        self,
        username: str,
        fetch: Callable[[str], UserProfile],
    ) -> UserProfile:
        """Return the cached profile or fetch it once."""
        with self._lock:
            future = self._entries.get(username)
            owner = future is None
            if future is None:
                future = Future()
                self._entries[username] = future
        if not owner:
            return future.result()

        try:
            profile = fetch(username)
        except BaseException as exc:
            with self._lock:
                self._entries.pop(username, None)
            future.set_exception(exc)
            raise
        future.set_result(profile)
        return profile


def github_headers(settings: Settings) -> dict[str, str]:
    """Return GitHub REST headers, authenticated when a token is set."""
    headers = {"Accept": "application/vnd.github+json"}
    if settings.github_token:
        headers["Authorization"] = f"Bearer {settings.github_token}"
    return headers


def call_github(
    settings: Settings,
    url: str,
    params: dict[str, object] | None = None,
) -> requests.Response:
    """Call a GitHub REST endpoint and return the checked response."""
    response = requests.get(
        url,
        headers=github_headers(settings),
        params=params,
        timeout=settings.http_timeout,
    )
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        raise GitHubRequestError(response.status_code, response.text)
    return response


def call_github_paginated(
    settings: Settings,
    url: str,
    params: dict[str, object] | None = None,
    items_key: str | None = None,
) -> list[JSONDict]:
    """Collect every page of a GitHub list endpoint by following Link headers."""
    results: list[JSONDict] = []
    next_url: str | None = url
    next_params: dict[str, object] | None = {**(params or {}), "per_page": PER_PAGE}
    while next_url:
        response = call_github(settings, next_url, next_params)
        payload = response.json()
        if items_key is not None:
            payload = ensure_dict(payload, "response").get(items_key)
        for item in ensure_list(payload, items_key or "response"):
            results.append(ensure_dict(item, "item"))
        next_url = response.links.get("next", {}).get("url")
        # The next link already carries the query string.
        next_params = None
    return results


class GitHubFetcher:
    """Fetches pull request data for one organization."""

    def __init__(self, settings: Settings, users: UserCache | None = None) -> None:
        """Create a fetcher, with a fresh user cache unless one is given."""
        self.settings = settings
        self.users = users if users is not None else UserCache()

    def _repo_url(self, repo: str, path: str) -> str:
        """Return the REST URL of a path under an org repository."""
        return (
            f"{self.settings.github_api_url}/repos/"
            f"{self.settings.github_org}/{repo}/{path}"
        )

    def search_open_pull_requests(self) -> list[PullRequestSummary]:
        """List open pull requests in the org, least recently updated first."""
        query = f"is:pr state:open user:{self.settings.github_org}"
        logger.info("GitHub search query: {query}", query=query)
        items = call_github_paginated(
            self.settings,
            f"{self.settings.github_api_url}/search/issues",
            {"q": query},
            items_key="items",
        )
        pull_requests = [parse_summary(item) for item in items]
        return sorted(pull_requests, key=lambda pr: pr.updated_at)

    def fetch_detail(self, summary: PullRequestSummary) -> PullRequestDetail:
        """Fetch the detail payload and merge it over the summary."""
        response = call_github(
            self.settings,
            self._repo_url(summary.repo, f"pulls/{summary.id}"),
        )
        data = ensure_dict(response.json(), "pull request")
        refreshed = parse_summary(data)
        if (refreshed.id, refreshed.repo) != (summary.id, summary.repo):
            raise MalformedPayloadError("pull request identity", refreshed.url)
        return PullRequestDetail(
            **{**summary.model_dump(), **refreshed.model_dump()},
            **parse_detail(data),
        )

    def fetch_approved_review(self, detail: PullRequestSummary) -> Review | None:
        """Return the first approved review in provider order, if any."""
        reviews = call_github_paginated(
            self.settings,
            self._repo_url(detail.repo, f"pulls/{detail.id}/reviews"),
        )
        for review in reviews:
            if review.get("state") == APPROVED_REVIEW_STATE:
                return parse_review(review)
        return None

    def fetch_comments(self, detail: PullRequestSummary) -> list[Comment]:
        """Return all issue comments in creation order."""
        comments = call_github_paginated(
            self.settings,
            self._repo_url(detail.repo, f"issues/{detail.id}/comments"),
        )
        return [parse_comment(comment) for comment in comments]

    def fetch_user(self, username: str) -> UserProfile:
        """Fetch a user profile, bypassing the cache."""
        response = call_github(
            self.settings,
            f"{self.settings.github_api_url}/users/{username}",
        )
        return parse_user(ensure_dict(response.json(), "user"))

    def get_user(self, username: str) -> UserProfile:
        """Return a user profile through the cache."""
        return self.users.get_or_fetch(username, self.fetch_user)


ClassificationRule = Callable[
    [PullRequestDetail, UserProfile | None, TicketLink | None, datetime, Classification],
    Classification,
]


def approval_rule(
    detail: PullRequestDetail,
    approver: UserProfile | None,
    ticket: TicketLink | None,
    deadline: datetime,
    current: Classification,
) -> Classification:
    """Mark approved pull requests and credit the approver."""
    if approver is None:
        return current
    return current.model_copy(
        update={
            "color": StatusColor.APPROVED,
            "infos": (*current.infos, f"Approved by {approver.name} :+1:"),
        },
    )


def deadline_rule(
    detail: PullRequestDetail,
    approver: UserProfile | None,
    ticket: TicketLink | None,
    deadline: datetime,
    current: Classification,
) -> Classification:
    """Warn when the last update is at or before the deadline."""
    if detail.updated_at > deadline:
        return current
    return current.model_copy(
        update={
            "color": StatusColor.PAST_DEADLINE,
            "warnings": (*current.warnings, NO_UPDATES_WARNING),
        },
    )


def description_rule(
    detail: PullRequestDetail,
    approver: UserProfile | None,
    ticket: TicketLink | None,
    deadline: datetime,
    current: Classification,
) -> Classification:
    """Flag pull requests with no description."""
    if detail.summary.strip():
        return current
    return current.model_copy(
        update={
            "color": StatusColor.INVALID,
            "warnings": (*current.warnings, NO_DESCRIPTION_WARNING),
        },
    )


def ticket_rule(
    detail: PullRequestDetail,
    approver: UserProfile | None,
    ticket: TicketLink | None,
    deadline: datetime,
    current: Classification,
) -> Classification:
    """Link the Clubhouse card, or flag its absence."""
    if ticket is None:
        return current.model_copy(
            update={
                "color": StatusColor.INVALID,
                "warnings": (*current.warnings, NO_TICKET_WARNING),
            },
        )
    return current.model_copy(
        update={
            "infos": (
                *current.infos,
                f"<{ticket.url}|Clubhouse card #{ticket.story_id}>",
            ),
        },
    )


# Applied in order; a later rule's color replaces an earlier one's.
CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    approval_rule,
    deadline_rule,
    description_rule,
    ticket_rule,
)


def classify(
    detail: PullRequestDetail,
    approver: UserProfile | None,
    ticket: TicketLink | None,
    now: datetime,
) -> Classification:
    """Classify a pull request by applying each rule in order."""
    deadline = now - timedelta(days=PR_DEADLINE_DAYS)
    classification = Classification()
    for rule in CLASSIFICATION_RULES:
        classification = rule(detail, approver, ticket, deadline, classification)
    return classification


def compose_text(classification: Classification, summary: str) -> str:
    """Join warnings, summary and info lines, dropping blank lines."""
    lines = [*classification.warnings, summary, *classification.infos]
    return "\n".join(line for line in lines if line.strip())


def pluralize(word: str, count: int) -> str:
    """Return the word, pluralized unless the count is exactly one."""
    return word if count == 1 else f"{word}s"


def format_footer(comment_count: int, files_changed: int) -> str:
    """Return the attachment footer with comment and file counts."""
    return (
        f"{comment_count} {pluralize('comment', comment_count)}. "
        f"{files_changed} {pluralize('file', files_changed)} changed."
    )


def build_slack_payload(
    channel: str,
    detail: PullRequestDetail,
    author: UserProfile,
    classification: Classification,
) -> JSONDict:
    """Build the webhook payload for one pull request."""
    return {
        "channel": channel,
        "attachments": [
            {
                "ts": int(detail.updated_at.timestamp()),
                "fallback": detail.title,
                "color": classification.color.value,
                "author_name": author.name,
                "author_link": author.url,
                "author_icon": author.avatar,
                "title": detail.title,
                "title_link": detail.url,
                "text": compose_text(classification, detail.summary),
                "footer": format_footer(detail.comment_count, detail.files_changed),
            },
        ],
    }


def post_to_slack(webhook_url: str, payload: JSONDict, timeout: float) -> None:
    """Post a message payload to Slack via webhook."""
    response = requests.post(webhook_url, json=payload, timeout=timeout)
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        raise SlackWebhookError(response.status_code, response.text)


def build_pull_request_payload(
    settings: Settings,
    fetcher: GitHubFetcher,
    detail: PullRequestDetail,
    author: UserProfile,
    now: datetime,
) -> JSONDict:
    """Enrich and classify a non-draft pull request into a Slack payload."""
    ticket = extract_ticket_link(
        detail,
        lambda: fetcher.fetch_comments(detail),
        settings.clubhouse_url,
    )
    review = fetcher.fetch_approved_review(detail)
    approver = fetcher.get_user(review.approved_by) if review is not None else None
    classification = classify(detail, approver, ticket, now)
    return build_slack_payload(settings.slack_channel, detail, author, classification)


def dispatch(settings: Settings, payload: JSONDict, dry_run: bool) -> None:
    """Post the payload, or log it when posting is disabled."""
    if dry_run or not settings.slack_webhook:
        logger.opt(raw=True).info(
            "{payload}\n",
            payload=json.dumps(payload, indent=2),
        )
        return
    post_to_slack(settings.slack_webhook, payload, settings.http_timeout)


_run_lock = threading.Lock()


def run_once(
    settings: Settings,
    fetcher: GitHubFetcher,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> RunStats:
    """Post a status message for every open, non-draft pull request.

    Pull requests are handled one at a time in order of last update. The
    first failure aborts the rest of the run.
    """
    if not _run_lock.acquire(blocking=False):
        raise RunInProgressError
    try:
        now = now or datetime.now(UTC)
        start = time.perf_counter()
        logger.info("Starting pull request status run", org=settings.github_org)
        summaries = fetcher.search_open_pull_requests()
        log_elapsed("Fetched open PRs", start, count=len(summaries))

        stats = RunStats(total=len(summaries))
        for summary in summaries:
            author = fetcher.get_user(summary.author)
            detail = fetcher.fetch_detail(summary)
            if detail.is_draft:
                logger.info("Skipping draft PR", repo=detail.repo, number=detail.id)
                stats.skipped_drafts += 1
                continue
            payload = build_pull_request_payload(settings, fetcher, detail, author, now)
            dispatch(settings, payload, dry_run)
            logger.info("PR posted", repo=detail.repo, number=detail.id)
            stats.posted += 1

        log_elapsed("Run complete", start, **stats.model_dump())
        return stats
    finally:
        _run_lock.release()


def next_run_at(schedule: str, after: datetime) -> datetime:
    """Return the next fire time of a cron expression in local time."""
    return croniter(schedule, after.astimezone()).get_next(datetime)


def run_on_schedule(
    settings: Settings,
    fetcher: GitHubFetcher,
    schedule: str,
    *,
    dry_run: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Run on a cron schedule; a failed run is logged and retried next time."""
    next_at = next_run_at(schedule, datetime.now().astimezone())
    logger.info("Next run at: {next_at}", next_at=next_at.isoformat())
    while True:
        delay = (next_at - datetime.now().astimezone()).total_seconds()
        sleep(max(delay, 0))
        logger.info("Running...")
        try:
            run_once(settings, fetcher, dry_run=dry_run)
        except (
            requests.RequestException,
            GitHubRequestError,
            SlackWebhookError,
            MalformedPayloadError,
        ):
            logger.exception("Pull request status run failed")
        next_at = next_run_at(schedule, datetime.now().astimezone())
        logger.info("Next run at: {next_at}", next_at=next_at.isoformat())


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="Pull request status digest")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print instead of posting to Slack",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run once even when SCHEDULE is set",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Minimum log level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    """Replace the default loguru sink with one at the given level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def main(argv: list[str] | None = None) -> int:
    """Run the status CLI."""
    args = parse_args(argv)
    configure_logging(args.log_level)
    settings = get_settings()
    fetcher = GitHubFetcher(settings)
    if settings.schedule and not args.once:
        run_on_schedule(settings, fetcher, settings.schedule, dry_run=args.dry_run)
        return 0
    run_once(settings, fetcher, dry_run=args.dry_run)
    return 0


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
