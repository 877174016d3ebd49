"""Tests for GitHubProvider against an httpx.MockTransport fake of the REST API."""

import uuid
from typing import Any

import httpx
import pytest

from aumos_integration_sync.providers.base import Confidence, ProviderContext, ProviderState
from aumos_integration_sync.providers.github import GitHubProvider
from aumos_integration_sync.providers.payloads import (
    GitHubBranchProtectionPayload,
    GitHubReposPayload,
    GitHubSecurityAlertsPayload,
)

_TOKEN = "ghp_valid"


def _repo(repo_id: int, name: str, **overrides: Any) -> dict[str, Any]:
    repo = {
        "id": repo_id,
        "name": name,
        "full_name": f"acme/{name}",
        "owner": {"login": "acme"},
        "private": False,
        "visibility": "public",
        "default_branch": "main",
        "archived": False,
        "fork": False,
    }
    repo.update(overrides)
    return repo


_REPOS = [
    _repo(1, "api", private=True, visibility="private"),
    _repo(2, "web"),
    _repo(3, "old", archived=True),
    _repo(4, "forked", fork=True),
]


class FakeGitHub:
    """Minimal GitHub REST API. Records every request it receives."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"Bearer {_TOKEN}":
            return httpx.Response(401, json={"message": "Bad credentials"})

        path = request.url.path
        if path == "/user":
            return httpx.Response(200, json={"login": "octocat", "name": "Octo Cat", "avatar_url": "https://x/y.png"})
        if path == "/user/orgs":
            return httpx.Response(200, json=[{"login": "acme"}])
        if path == "/rate_limit":
            return httpx.Response(200, json={"rate": {"limit": 5000, "remaining": 4990, "reset": 1_700_000_000}})
        if path in ("/user/repos", "/orgs/acme/repos"):
            if request.url.params.get("page") == "2":
                return httpx.Response(200, json=_REPOS[2:])
            return httpx.Response(
                200,
                json=_REPOS[:2],
                headers={"Link": f'<https://api.github.com{path}?per_page=100&page=2>; rel="next"'},
            )
        if path == "/repos/acme/api/branches/main/protection":
            return httpx.Response(
                200,
                json={
                    "required_pull_request_reviews": {
                        "required_approving_review_count": 2,
                        "dismiss_stale_reviews": True,
                    },
                    "required_status_checks": {"strict": True},
                    "enforce_admins": {"enabled": True},
                },
            )
        if path.endswith("/protection"):
            return httpx.Response(404, json={"message": "Branch not protected"})
        if path == "/repos/acme/api/dependabot/alerts":
            return httpx.Response(
                200,
                json=[
                    {"security_vulnerability": {"severity": "critical"}},
                    {"security_vulnerability": {"severity": "high"}},
                    {"security_vulnerability": {"severity": "low"}},
                ],
            )
        if path == "/repos/acme/web/dependabot/alerts":
            return httpx.Response(403, json={"message": "Dependabot alerts are disabled"})
        if path.endswith("/dependabot/alerts"):
            return httpx.Response(200, json=[])
        return httpx.Response(404, json={"message": "Not Found"})


def _provider(fake: FakeGitHub, token: str = _TOKEN, config: dict[str, Any] | None = None) -> GitHubProvider:
    context = ProviderContext(
        organization_id=uuid.uuid4(),
        integration_id=uuid.uuid4(),
        credentials={"accessToken": token},
        config=config or {},
    )
    return GitHubProvider(context, transport=httpx.MockTransport(fake))


class TestGitHubConnection:
    """connect(), test_connection() and disconnect()."""

    @pytest.mark.asyncio()
    async def test_connect_success(self) -> None:
        """A valid token connects and reports the user and organizations."""
        provider = _provider(FakeGitHub())

        result = await provider.connect()

        assert result.success is True
        assert result.metadata["username"] == "octocat"
        assert result.metadata["organizations"] == [{"login": "acme", "name": "acme"}]
        assert provider.state is ProviderState.CONNECTED
        await provider.disconnect()
        assert provider.state is ProviderState.DISCONNECTED

    @pytest.mark.asyncio()
    async def test_connect_bad_token(self) -> None:
        """GitHub's own error message is surfaced on authentication failure."""
        provider = _provider(FakeGitHub(), token="ghp_wrong")

        result = await provider.connect()

        assert result.success is False
        assert result.error == "Bad credentials"
        assert provider.state is ProviderState.ERROR

    @pytest.mark.asyncio()
    async def test_connect_without_token(self) -> None:
        fake = FakeGitHub()
        provider = _provider(fake, token="")

        result = await provider.connect()

        assert result.success is False
        assert "accessToken" in result.error
        assert fake.requests == []

    @pytest.mark.asyncio()
    async def test_test_connection_connects_first(self) -> None:
        provider = _provider(FakeGitHub())

        result = await provider.test_connection()

        assert result.success is True
        assert result.scopes == ["repo", "read:org"]
        assert result.metadata["rateLimit"]["remaining"] == 4990
        await provider.disconnect()

    @pytest.mark.asyncio()
    async def test_test_connection_reports_failure(self) -> None:
        result = await _provider(FakeGitHub(), token="ghp_wrong").test_connection()

        assert result.success is False
        assert result.error == "Bad credentials"


class TestGitHubCollection:
    """The repos, branch-protection and security-alerts collectors."""

    @pytest.mark.asyncio()
    async def test_repos_collector_follows_pagination(self) -> None:
        """Repositories from every page are collected and summarized."""
        provider = _provider(FakeGitHub())
        await provider.connect()

        [result] = await provider.collect(["repos"])
        await provider.disconnect()

        assert result.success is True
        assert isinstance(result.data, GitHubReposPayload)
        assert [r.name for r in result.data.repositories] == ["api", "web", "old", "forked"]
        assert result.data.summary.total == 4
        assert result.data.summary.private == 1
        assert result.data.summary.archived == 1
        assert result.data.summary.forks == 1

    @pytest.mark.asyncio()
    async def test_organization_config_lists_org_repos(self) -> None:
        fake = FakeGitHub()
        provider = _provider(fake, config={"organization": "acme", "includePrivate": False})
        await provider.connect()

        await provider.collect(["repos"])
        await provider.disconnect()

        first_listing = next(r for r in fake.requests if r.url.path == "/orgs/acme/repos")
        assert first_listing.url.params["type"] == "public"
        assert first_listing.url.params["per_page"] == "100"

    @pytest.mark.asyncio()
    async def test_branch_protection_skips_archived_and_forks(self) -> None:
        """A 404 from the protection endpoint means the branch is unprotected."""
        provider = _provider(FakeGitHub())
        await provider.connect()

        [result] = await provider.collect(["branch-protection"])
        await provider.disconnect()

        data = result.data
        assert isinstance(data, GitHubBranchProtectionPayload)
        assert [e.repo for e in data.branch_protection] == ["acme/api", "acme/web"]
        api, web = data.branch_protection
        assert api.protected is True
        assert api.protection.required_reviewers == 2
        assert api.protection.enforce_admins is True
        assert web.protected is False
        assert web.error is None
        assert data.summary.protection_rate == 50
        assert data.summary.unprotected_repos == 1

    @pytest.mark.asyncio()
    async def test_security_alerts_counts_severities(self) -> None:
        provider = _provider(FakeGitHub())
        await provider.connect()

        [result] = await provider.collect(["security-alerts"])
        await provider.disconnect()

        data = result.data
        assert isinstance(data, GitHubSecurityAlertsPayload)
        assert [r.repo for r in data.security_alerts] == ["acme/api", "acme/web", "acme/forked"]
        assert data.security_alerts[1].error == "Dependabot not enabled"
        assert data.summary.scanned_repos == 2
        assert data.summary.total_alerts == 3
        assert data.summary.critical_alerts == 1
        assert data.summary.high_alerts == 1
        assert result.items_collected == 3


class TestGitHubEvidence:
    """generate_evidence() verdicts over collected data."""

    @pytest.mark.asyncio()
    async def test_generates_one_item_per_successful_collector(self) -> None:
        provider = _provider(FakeGitHub())
        await provider.connect()
        results = await provider.collect()
        await provider.disconnect()

        evidence = provider.generate_evidence(results)

        assert [e.title for e in evidence] == [
            "GitHub Repository Inventory",
            "GitHub Branch Protection Status",
            "GitHub Security Alerts Summary",
        ]
        assert all(e.source == "github" for e in evidence)
        assert all(e.valid_until > e.valid_from for e in evidence)

        inventory, protection, alerts = evidence
        assert inventory.verification_result.is_implemented is True
        assert "A.5.9" in inventory.control_patterns
        assert inventory.metadata["summary"]["total"] == 4

        assert protection.verification_result.is_implemented is False
        assert protection.verification_result.confidence is Confidence.MEDIUM
        assert protection.verification_result.reason == "Only 50% of repositories have branch protection (requires 80%)"

        assert alerts.verification_result.is_implemented is True
        assert alerts.verification_result.confidence is Confidence.LOW
        assert alerts.verification_result.metrics["criticalAlerts"] == 1

    @pytest.mark.asyncio()
    async def test_failed_collectors_produce_no_evidence(self) -> None:
        provider = _provider(FakeGitHub())
        await provider.connect()
        results = await provider.collect(["unknown", "repos"])
        await provider.disconnect()

        evidence = provider.generate_evidence(results)

        assert [e.title for e in evidence] == ["GitHub Repository Inventory"]

    def test_control_mappings_cover_github_source(self) -> None:
        mappings = _provider(FakeGitHub()).get_control_mappings()

        assert {m.evidence_source for m in mappings} == {"github"}
        assert any(m.control_name_pattern.search("Change Management Process") for m in mappings)
