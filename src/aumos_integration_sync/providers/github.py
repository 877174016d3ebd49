"""GitHub integration provider.

Collects security-relevant data from the GitHub REST API:
- Repository inventory
- Branch protection on default branches
- Open Dependabot alerts

Authentication is a personal access token with the repo, read:org and
security_events scopes. Requests go through httpx.AsyncClient; tests inject an
httpx.MockTransport.
"""

import re
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, ClassVar

import httpx

from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.providers.base import (
    CollectionResult,
    CollectorInfo,
    CollectorOutput,
    Confidence,
    ConfigField,
    ConnectionResult,
    ConnectionState,
    ControlMapping,
    CredentialField,
    GeneratedEvidence,
    ProviderContext,
    ProviderState,
    TestResult,
    VerificationResult,
    elapsed_ms,
    percentage,
    rate_confidence,
    run_collectors,
    validity_window,
)
from aumos_integration_sync.providers.payloads import (
    BranchProtectionDetail,
    BranchProtectionEntry,
    BranchProtectionSummary,
    GitHubBranchProtectionPayload,
    GitHubReposPayload,
    GitHubRepository,
    GitHubSecurityAlertsPayload,
    RepositoryAlerts,
    RepositorySummary,
    SecurityAlertsSummary,
)

logger = get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"
EVIDENCE_SOURCE = "github"

_PAGE_SIZE = 100
# Per-repo calls are capped to stay well inside the hourly rate limit.
_BRANCH_PROTECTION_REPO_LIMIT = 20
_SECURITY_ALERT_REPO_LIMIT = 10

BRANCH_PROTECTION_THRESHOLD = 80

_REPOS_PATTERNS = [
    "asset",
    "inventory",
    "repository",
    "source code",
    "A.5.9",  # ISO 27001:2022 inventory of information and other associated assets
    "A.8.4",  # ISO 27001:2022 access to source code
    "CC6.1",  # SOC 2 logical access security
]

_BRANCH_PROTECTION_PATTERNS = [
    "change management",
    "code review",
    "approval",
    "branch protection",
    "pull request",
    "A.8.9",  # configuration management
    "A.8.25",  # secure development life cycle
    "A.8.32",  # change management
    "CC8.1",  # manage changes
    "CC6.1",
]

_SECURITY_ALERT_PATTERNS = [
    "vulnerability",
    "security scan",
    "dependabot",
    "dependency",
    "secure development",
    "A.8.8",  # management of technical vulnerabilities
    "A.8.7",  # protection against malware
    "A.8.25",
    "A.8.28",  # secure coding
    "CC7.1",  # detect and monitor security events
    "CC3.2",  # identify risks
]


def _error_message(exc: httpx.HTTPError) -> str:
    """Prefer GitHub's own error message ("Bad credentials") over the status line."""
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"GitHub API returned HTTP {exc.response.status_code}"
    return str(exc) or type(exc).__name__


class GitHubProvider:
    """Repository-hosting provider backed by the GitHub REST API.

    Args:
        context: Integration ids, decrypted credentials and config.
        transport: Optional httpx transport, used by tests.
    """

    type: ClassVar[str] = "github"
    display_name: ClassVar[str] = "GitHub"
    description: ClassVar[str] = (
        "Connect to GitHub to collect repository security data, branch protection status, "
        "and vulnerability alerts."
    )
    icon: ClassVar[str] = "github"

    required_credentials: ClassVar[tuple[CredentialField, ...]] = (
        CredentialField(
            key="accessToken",
            label="Personal Access Token",
            type="password",
            placeholder="ghp_xxxxxxxxxxxxxxxxxxxx",
            help_text="Generate a PAT with repo, read:org, and security_events scopes",
        ),
    )
    config_fields: ClassVar[tuple[ConfigField, ...]] = (
        ConfigField(
            key="organization",
            label="Organization",
            help_text="Limit to a specific GitHub organization (optional)",
        ),
        ConfigField(
            key="includePrivate",
            label="Include Private Repos",
            type="boolean",
            default=True,
            help_text="Whether to include private repositories",
        ),
    )

    def __init__(self, context: ProviderContext, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._context = context
        self._transport = transport
        self._connection = ConnectionState(self.display_name)
        self._client: httpx.AsyncClient | None = None

    @property
    def state(self) -> ProviderState:
        return self._connection.state

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectionResult:
        """Authenticate with the token and list the caller's organizations."""
        missing = self._context.missing_credentials(self.required_credentials)
        if missing:
            return ConnectionResult(success=False, error=f"Missing required credentials: {', '.join(missing)}")

        self._connection.begin()
        client = httpx.AsyncClient(
            base_url=GITHUB_API_URL,
            headers={
                "Authorization": f"Bearer {self._context.credential('accessToken')}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=self._context.http_timeout,
            transport=self._transport,
        )

        try:
            user = await self._get_json(client, "/user")
            orgs = await self._get_json(client, "/user/orgs")
        except httpx.HTTPError as exc:
            await client.aclose()
            self._connection.mark_failed()
            logger.warning(
                "GitHub authentication failed",
                integration_id=str(self._context.integration_id),
                error=_error_message(exc),
            )
            return ConnectionResult(success=False, error=_error_message(exc))

        self._client = client
        self._connection.mark_connected()
        return ConnectionResult(
            success=True,
            metadata={
                "username": user.get("login"),
                "name": user.get("name"),
                "avatarUrl": user.get("avatar_url"),
                "organizations": [{"login": org.get("login"), "name": org.get("login")} for org in orgs],
            },
        )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._connection.reset()

    async def test_connection(self) -> TestResult:
        """Check the rate-limit endpoint, connecting first when needed."""
        started = time.monotonic()

        if self._client is None:
            connected = await self.connect()
            if not connected.success:
                return TestResult(success=False, latency_ms=elapsed_ms(started), error=connected.error)

        try:
            rate_limit = await self._get_json(self._client, "/rate_limit")
        except httpx.HTTPError as exc:
            return TestResult(success=False, latency_ms=elapsed_ms(started), error=_error_message(exc))

        rate = rate_limit.get("rate", {})
        reset = rate.get("reset")
        return TestResult(
            success=True,
            latency_ms=elapsed_ms(started),
            scopes=["repo", "read:org"],
            metadata={
                "rateLimit": {
                    "limit": rate.get("limit"),
                    "remaining": rate.get("remaining"),
                    "reset": datetime.fromtimestamp(reset, tz=UTC).isoformat() if reset else None,
                }
            },
        )

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def get_available_collectors(self) -> list[CollectorInfo]:
        return [
            CollectorInfo(
                id="repos",
                name="Repositories",
                description="Inventory of all accessible repositories with visibility and configuration",
                evidence_types=("config",),
                control_categories=("asset-management", "configuration"),
            ),
            CollectorInfo(
                id="branch-protection",
                name="Branch Protection",
                description="Branch protection rules for default branches",
                evidence_types=("config",),
                control_categories=("change-management", "code-review"),
            ),
            CollectorInfo(
                id="security-alerts",
                name="Security Alerts",
                description="Dependabot and code scanning alerts",
                evidence_types=("report",),
                control_categories=("vulnerability-management", "secure-development"),
            ),
        ]

    async def collect(self, collector_ids: Sequence[str] | None = None) -> list[CollectionResult]:
        """Run the requested collectors (all when None or empty).

        Raises:
            ProviderNotConnectedError: If connect() has not succeeded.
        """
        self._connection.ensure_connected()
        return await run_collectors(
            self.type,
            self.get_available_collectors(),
            {
                "repos": self._collect_repositories,
                "branch-protection": self._collect_branch_protection,
                "security-alerts": self._collect_security_alerts,
            },
            collector_ids,
        )

    async def _collect_repositories(self) -> CollectorOutput:
        include_private = bool(self._context.config_value("includePrivate", True))
        repositories = await self._list_repositories(include_private=include_private)

        payload = GitHubReposPayload(
            repositories=repositories,
            summary=RepositorySummary(
                total=len(repositories),
                private=sum(1 for r in repositories if r.private),
                public=sum(1 for r in repositories if not r.private),
                archived=sum(1 for r in repositories if r.archived),
                forks=sum(1 for r in repositories if r.fork),
            ),
        )
        return CollectorOutput(payload=payload, items_collected=len(repositories))

    async def _collect_branch_protection(self) -> CollectorOutput:
        repositories = await self._list_repositories()
        active = [r for r in repositories if not r.archived and not r.fork]

        entries: list[BranchProtectionEntry] = []
        for repo in active[:_BRANCH_PROTECTION_REPO_LIMIT]:
            path = f"/repos/{repo.owner}/{repo.name}/branches/{repo.default_branch}/protection"
            try:
                protection = await self._get_json(self._client, path)
            except httpx.HTTPStatusError as exc:
                # 404 means the branch has no protection, which is valid data.
                if exc.response.status_code == 404:
                    entries.append(
                        BranchProtectionEntry(repo=repo.full_name, branch=repo.default_branch, protected=False)
                    )
                else:
                    entries.append(
                        BranchProtectionEntry(
                            repo=repo.full_name,
                            branch=repo.default_branch,
                            protected=False,
                            error=_error_message(exc),
                        )
                    )
                continue
            except httpx.RequestError as exc:
                entries.append(
                    BranchProtectionEntry(
                        repo=repo.full_name,
                        branch=repo.default_branch,
                        protected=False,
                        error=_error_message(exc),
                    )
                )
                continue

            reviews = protection.get("required_pull_request_reviews") or {}
            status_checks = protection.get("required_status_checks") or {}
            enforce_admins = protection.get("enforce_admins") or {}
            entries.append(
                BranchProtectionEntry(
                    repo=repo.full_name,
                    branch=repo.default_branch,
                    protected=True,
                    protection=BranchProtectionDetail(
                        required_reviews=bool(protection.get("required_pull_request_reviews")),
                        required_reviewers=reviews.get("required_approving_review_count") or 0,
                        dismiss_stale_reviews=bool(reviews.get("dismiss_stale_reviews")),
                        require_code_owners=bool(reviews.get("require_code_owner_reviews")),
                        required_status_checks=bool(protection.get("required_status_checks")),
                        strict_status_checks=bool(status_checks.get("strict")),
                        enforce_admins=bool(enforce_admins.get("enabled")),
                    ),
                )
            )

        protected = sum(1 for e in entries if e.protected)
        payload = GitHubBranchProtectionPayload(
            branch_protection=entries,
            summary=BranchProtectionSummary(
                total_repos=len(entries),
                protected_repos=protected,
                unprotected_repos=sum(1 for e in entries if not e.protected and not e.error),
                with_required_reviews=sum(1 for e in entries if e.protection and e.protection.required_reviews),
                with_status_checks=sum(
                    1 for e in entries if e.protection and e.protection.required_status_checks
                ),
                protection_rate=percentage(protected, len(entries)),
            ),
        )
        return CollectorOutput(payload=payload, items_collected=len(entries))

    async def _collect_security_alerts(self) -> CollectorOutput:
        repositories = await self._list_repositories()
        active = [r for r in repositories if not r.archived]

        scanned: list[RepositoryAlerts] = []
        for repo in active[:_SECURITY_ALERT_REPO_LIMIT]:
            try:
                alerts = await self._get_json(
                    self._client,
                    f"/repos/{repo.owner}/{repo.name}/dependabot/alerts",
                    params={"state": "open", "per_page": _PAGE_SIZE},
                )
            except httpx.HTTPError as exc:
                disabled = isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in (403, 404)
                scanned.append(
                    RepositoryAlerts(
                        repo=repo.full_name,
                        error="Dependabot not enabled" if disabled else _error_message(exc),
                    )
                )
                continue

            severities = [(alert.get("security_vulnerability") or {}).get("severity") for alert in alerts]
            scanned.append(
                RepositoryAlerts(
                    repo=repo.full_name,
                    dependabot_alerts=len(alerts),
                    critical_alerts=severities.count("critical"),
                    high_alerts=severities.count("high"),
                    medium_alerts=severities.count("medium"),
                    low_alerts=severities.count("low"),
                )
            )

        total_alerts = sum(r.dependabot_alerts for r in scanned)
        payload = GitHubSecurityAlertsPayload(
            security_alerts=scanned,
            summary=SecurityAlertsSummary(
                total_repos=len(scanned),
                scanned_repos=sum(1 for r in scanned if r.error is None),
                repos_with_alerts=sum(1 for r in scanned if r.dependabot_alerts > 0),
                total_alerts=total_alerts,
                critical_alerts=sum(r.critical_alerts for r in scanned),
                high_alerts=sum(r.high_alerts for r in scanned),
                medium_alerts=sum(r.medium_alerts for r in scanned),
                low_alerts=sum(r.low_alerts for r in scanned),
            ),
        )
        return CollectorOutput(payload=payload, items_collected=total_alerts)

    async def _list_repositories(self, include_private: bool | None = None) -> list[GitHubRepository]:
        """List repositories for the configured organization, or the token owner.

        Args:
            include_private: When set, filter by visibility. None leaves GitHub's default.
        """
        organization = self._context.config_value("organization")
        params: dict[str, Any] | None = {"per_page": _PAGE_SIZE}
        if organization:
            path = f"/orgs/{organization}/repos"
            if include_private is not None:
                params["type"] = "all" if include_private else "public"
        else:
            path = "/user/repos"
            if include_private is not None:
                params["visibility"] = "all" if include_private else "public"

        raw: list[dict[str, Any]] = []
        url: str | None = path
        while url:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
            raw.extend(response.json())
            url = response.links.get("next", {}).get("url")
            # The next link already carries the query string.
            params = None

        return [
            GitHubRepository(
                id=r["id"],
                name=r["name"],
                full_name=r["full_name"],
                owner=(r.get("owner") or {}).get("login", ""),
                private=r.get("private", False),
                visibility=r.get("visibility"),
                default_branch=r.get("default_branch") or "main",
                archived=r.get("archived", False),
                disabled=r.get("disabled", False),
                fork=r.get("fork", False),
                language=r.get("language"),
                open_issues_count=r.get("open_issues_count", 0),
                created_at=r.get("created_at"),
                updated_at=r.get("updated_at"),
                pushed_at=r.get("pushed_at"),
            )
            for r in raw
        ]

    @staticmethod
    async def _get_json(client: httpx.AsyncClient, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def generate_evidence(self, results: Sequence[CollectionResult]) -> list[GeneratedEvidence]:
        """Turn successful collection results into evidence with verification judgments."""
        valid_from, valid_until = validity_window(self._context.evidence_validity_hours)
        evidence: list[GeneratedEvidence] = []

        for result in results:
            if not result.success or result.data is None:
                continue
            data = result.data
            metadata = data.model_dump(mode="json")

            if isinstance(data, GitHubReposPayload):
                summary = data.summary
                has_repos = summary.total > 0
                evidence.append(
                    GeneratedEvidence(
                        title="GitHub Repository Inventory",
                        description=(
                            f"Automated inventory of {summary.total} GitHub repositories. "
                            f"{summary.private} private, {summary.public} public."
                        ),
                        evidence_type="config",
                        source=EVIDENCE_SOURCE,
                        metadata=metadata,
                        valid_from=valid_from,
                        valid_until=valid_until,
                        control_patterns=list(_REPOS_PATTERNS),
                        verification_result=VerificationResult(
                            is_implemented=has_repos,
                            confidence=Confidence.HIGH,
                            reason=(
                                f"Repository inventory maintained with {summary.total} repositories tracked"
                                if has_repos
                                else "No repositories found in connected account"
                            ),
                            metrics={
                                "totalRepositories": summary.total,
                                "privateRepositories": summary.private,
                                "publicRepositories": summary.public,
                            },
                        ),
                    )
                )

            elif isinstance(data, GitHubBranchProtectionPayload):
                summary = data.summary
                rate = summary.protection_rate
                is_implemented = rate >= BRANCH_PROTECTION_THRESHOLD
                evidence.append(
                    GeneratedEvidence(
                        title="GitHub Branch Protection Status",
                        description=(
                            f"Branch protection analysis for {summary.total_repos} repositories. "
                            f"{rate}% have protection enabled."
                        ),
                        evidence_type="config",
                        source=EVIDENCE_SOURCE,
                        metadata=metadata,
                        valid_from=valid_from,
                        valid_until=valid_until,
                        control_patterns=list(_BRANCH_PROTECTION_PATTERNS),
                        verification_result=VerificationResult(
                            is_implemented=is_implemented,
                            confidence=rate_confidence(rate, high_at=90, medium_at=50),
                            reason=(
                                f"{rate}% of repositories have branch protection enabled "
                                f"(threshold: {BRANCH_PROTECTION_THRESHOLD}%)"
                                if is_implemented
                                else f"Only {rate}% of repositories have branch protection "
                                f"(requires {BRANCH_PROTECTION_THRESHOLD}%)"
                            ),
                            metrics={
                                "protectionRate": rate,
                                "protectedRepos": summary.protected_repos,
                                "unprotectedRepos": summary.unprotected_repos,
                                "withRequiredReviews": summary.with_required_reviews,
                                "threshold": BRANCH_PROTECTION_THRESHOLD,
                            },
                        ),
                    )
                )

            elif isinstance(data, GitHubSecurityAlertsPayload):
                evidence.append(self._security_alerts_evidence(data, metadata, valid_from, valid_until))

        return evidence

    @staticmethod
    def _security_alerts_evidence(
        data: GitHubSecurityAlertsPayload,
        metadata: dict[str, Any],
        valid_from: datetime,
        valid_until: datetime,
    ) -> GeneratedEvidence:
        """Scanning counts as implemented whenever any repository returned alert data.

        Open findings only lower the confidence; a noisy but scanned estate is
        a different state from one with scanning switched off.
        """
        summary = data.summary
        is_implemented = summary.scanned_repos > 0
        no_severe_alerts = summary.critical_alerts == 0 and summary.high_alerts == 0

        if no_severe_alerts:
            confidence = Confidence.HIGH
        elif summary.critical_alerts == 0:
            confidence = Confidence.MEDIUM
        else:
            confidence = Confidence.LOW

        if not is_implemented:
            reason = "Security scanning not detected on repositories"
        elif no_severe_alerts:
            reason = "Security scanning enabled with no critical or high severity alerts"
        else:
            reason = (
                f"Security scanning enabled but {summary.critical_alerts} critical and "
                f"{summary.high_alerts} high alerts need attention"
            )

        return GeneratedEvidence(
            title="GitHub Security Alerts Summary",
            description=(
                f"Security vulnerability analysis: {summary.total_alerts} open alerts across "
                f"{summary.repos_with_alerts} repositories. {summary.critical_alerts} critical, "
                f"{summary.high_alerts} high severity."
            ),
            evidence_type="report",
            source=EVIDENCE_SOURCE,
            metadata=metadata,
            valid_from=valid_from,
            valid_until=valid_until,
            control_patterns=list(_SECURITY_ALERT_PATTERNS),
            verification_result=VerificationResult(
                is_implemented=is_implemented,
                confidence=confidence,
                reason=reason,
                metrics={
                    "totalAlerts": summary.total_alerts,
                    "criticalAlerts": summary.critical_alerts,
                    "highAlerts": summary.high_alerts,
                    "mediumAlerts": summary.medium_alerts,
                    "lowAlerts": summary.low_alerts,
                    "reposScanned": summary.scanned_repos,
                },
            ),
        )

    def get_control_mappings(self) -> list[ControlMapping]:
        return [
            ControlMapping(
                evidence_source=EVIDENCE_SOURCE,
                control_name_pattern=re.compile(r"asset.*management|inventory|source.*code", re.IGNORECASE),
                control_tags=("asset-management",),
            ),
            ControlMapping(
                evidence_source=EVIDENCE_SOURCE,
                control_name_pattern=re.compile(
                    r"change.*management|code.*review|pull.*request|approval", re.IGNORECASE
                ),
                control_tags=("change-management", "code-review"),
            ),
            ControlMapping(
                evidence_source=EVIDENCE_SOURCE,
                control_name_pattern=re.compile(r"vulnerab|security.*scan|dependabot|dependency", re.IGNORECASE),
                control_tags=("vulnerability-management", "secure-development"),
            ),
        ]
