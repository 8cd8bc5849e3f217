"""Tests for the GitHub fetcher and the user profile cache."""
from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

from conftest import detail_payload, make_detail, make_user, pr_payload
from scripts.pr_status import (
    GitHubFetcher,
    GitHubRequestError,
    MalformedPayloadError,
    UserCache,
    call_github_paginated,
    parse_summary,
)

API = "https://api.github.test"


def _response(payload: object, status_code: int = 200, next_url: str | None = None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = "error"
    response.links = {"next": {"url": next_url}} if next_url else {}
    return response


class TestCallGithub:
    def test_follows_next_links(self, settings):
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.side_effect = [
                _response([{"id": 1}], next_url=f"{API}/things?page=2"),
                _response([{"id": 2}]),
            ]
            items = call_github_paginated(settings, f"{API}/things")

        assert items == [{"id": 1}, {"id": 2}]
        first, second = mock_get.call_args_list
        assert first.kwargs["params"] == {"per_page": 100}
        assert first.kwargs["headers"]["Authorization"] == "Bearer test-token"
        assert second.args[0] == f"{API}/things?page=2"
        assert second.kwargs["params"] is None

    def test_error_status_raises(self, settings):
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response({}, status_code=502)
            with pytest.raises(GitHubRequestError, match="502"):
                call_github_paginated(settings, f"{API}/things")

    def test_unauthenticated_without_token(self, settings):
        anonymous = settings.model_copy(update={"github_token": None})
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response([])
            call_github_paginated(anonymous, f"{API}/things")
        assert "Authorization" not in mock_get.call_args.kwargs["headers"]


class TestGitHubFetcher:
    def test_search_sorts_by_last_update(self, settings):
        items = [
            pr_payload(number=1, updated_at="2026-10-18T09:00:00Z"),
            pr_payload(number=2, updated_at="2026-10-01T09:00:00Z"),
            pr_payload(number=3, updated_at="2026-10-10T09:00:00Z"),
        ]
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response({"total_count": 3, "items": items})
            prs = GitHubFetcher(settings).search_open_pull_requests()

        assert [pr.id for pr in prs] == [2, 3, 1]
        assert mock_get.call_args.args[0] == f"{API}/search/issues"
        assert mock_get.call_args.kwargs["params"]["q"] == "is:pr state:open user:acme"

    def test_fetch_detail_merges_summary(self, settings):
        summary = parse_summary(pr_payload(number=9, repo="web"))
        data = detail_payload(
            number=9,
            repo="web",
            branch="ch5-fix",
            changed_files=4,
            mergeable_state="draft",
        )
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response(data)
            detail = GitHubFetcher(settings).fetch_detail(summary)

        assert mock_get.call_args.args[0] == f"{API}/repos/acme/web/pulls/9"
        assert detail.id == summary.id
        assert detail.repo == summary.repo
        assert detail.title == summary.title
        assert detail.branch == "ch5-fix"
        assert detail.files_changed == 4
        assert detail.is_draft is True

    def test_fetch_detail_rejects_other_pull_request(self, settings):
        summary = parse_summary(pr_payload(number=9, repo="web"))
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response(detail_payload(number=10, repo="web"))
            with pytest.raises(MalformedPayloadError):
                GitHubFetcher(settings).fetch_detail(summary)

    def test_first_approved_review(self, settings):
        reviews = [
            {"user": {"login": "a"}, "state": "COMMENTED"},
            {"user": {"login": "b"}, "state": "APPROVED"},
            {"user": {"login": "c"}, "state": "APPROVED"},
        ]
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response(reviews)
            review = GitHubFetcher(settings).fetch_approved_review(make_detail())

        assert review is not None
        assert review.approved_by == "b"
        assert mock_get.call_args.args[0] == f"{API}/repos/acme/api/pulls/42/reviews"

    def test_no_approved_review(self, settings):
        reviews = [{"user": {"login": "a"}, "state": "CHANGES_REQUESTED"}]
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response(reviews)
            assert GitHubFetcher(settings).fetch_approved_review(make_detail()) is None

    def test_comments_in_provider_order(self, settings):
        comments = [
            {"user": {"login": "a"}, "body": "first"},
            {"user": {"login": "b"}, "body": "second"},
        ]
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response(comments)
            result = GitHubFetcher(settings).fetch_comments(make_detail())

        assert [comment.body for comment in result] == ["first", "second"]
        assert mock_get.call_args.args[0] == f"{API}/repos/acme/api/issues/42/comments"

    def test_get_user_is_cached(self, settings):
        user = {
            "login": "octocat",
            "name": None,
            "avatar_url": "https://avatars.example.com/1",
            "html_url": "https://github.com/octocat",
        }
        fetcher = GitHubFetcher(settings)
        with patch("scripts.pr_status.requests.get") as mock_get:
            mock_get.return_value = _response(user)
            first = fetcher.get_user("octocat")
            second = fetcher.get_user("octocat")

        mock_get.assert_called_once()
        assert mock_get.call_args.args[0] == f"{API}/users/octocat"
        assert first is second
        assert first.name == "octocat"
        assert "octocat" in fetcher.users


class TestUserCache:
    def test_fetches_each_user_once(self):
        cache = UserCache()
        fetch = MagicMock(side_effect=lambda name: make_user(name))
        cache.get_or_fetch("a", fetch)
        cache.get_or_fetch("b", fetch)
        cache.get_or_fetch("a", fetch)
        assert [call.args[0] for call in fetch.call_args_list] == ["a", "b"]

    def test_failed_fetch_is_not_cached(self):
        cache = UserCache()
        fetch = MagicMock(side_effect=[GitHubRequestError(500, "boom"), make_user()])
        with pytest.raises(GitHubRequestError):
            cache.get_or_fetch("octocat", fetch)
        assert "octocat" not in cache
        assert cache.get_or_fetch("octocat", fetch).username == "octocat"
        assert fetch.call_count == 2

    def test_concurrent_misses_coalesce(self):
        cache = UserCache()
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_fetch(name):
            calls.append(name)
            started.set()
            release.wait(timeout=5)
            return make_user(name)

        results = []
        first = threading.Thread(
            target=lambda: results.append(cache.get_or_fetch("octocat", slow_fetch)),
        )
        first.start()
        assert started.wait(timeout=5)
        second = threading.Thread(
            target=lambda: results.append(cache.get_or_fetch("octocat", slow_fetch)),
        )
        second.start()
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert calls == ["octocat"]
        assert len(results) == 2
        assert results[0] is results[1]
