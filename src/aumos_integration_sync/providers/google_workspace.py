"""Google Workspace integration provider.

Collects directory and security posture data from the Admin SDK Directory API:
- Directory: users and groups
- Security: 2-Step Verification enrollment, admin roles, inactive accounts

Authentication uses a service account with domain-wide delegation. The
provider signs an RS256 JWT assertion with PyJWT, impersonating adminEmail,
and exchanges it for an OAuth access token.
"""

import json
import re
import time
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

import httpx
import jwt

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
    AdminAccount,
    DirectoryGroup,
    DirectorySummary,
    DirectoryUser,
    GoogleDirectoryPayload,
    GoogleSecurityPayload,
    InactiveUser,
    MfaUserStatus,
    WorkspaceSecuritySummary,
)

logger = get_logger(__name__)

EVIDENCE_SOURCE = "google-workspace"

TOKEN_URI = "https://oauth2.googleapis.com/token"
DIRECTORY_API_URL = "https://admin.googleapis.com/admin/directory/v1"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
SCOPES = (
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
    "https://www.googleapis.com/auth/admin.directory.group.readonly",
    "https://www.googleapis.com/auth/admin.reports.audit.readonly",
)
CUSTOMER = "my_customer"
_ASSERTION_LIFETIME_SECONDS = 3600
_USER_PAGE_SIZE = 500
_GROUP_PAGE_SIZE = 200

MFA_THRESHOLD = 95
INACTIVE_AFTER = timedelta(days=90)

_DIRECTORY_PATTERNS = [
    "user",
    "directory",
    "identity",
    "inventory",
    "A.5.9",  # inventory of information and other associated assets
    "A.5.16",  # identity management
    "CC6.1",  # logical access security
    "CC6.2",  # user registration and authorization
]
_MFA_PATTERNS = ["mfa", "multi-factor", "2fa", "authentication", "A.5.17", "A.8.5", "CC6.1"]
_PRIVILEGED_ACCESS_PATTERNS = [
    "admin",
    "privileged",
    "access",
    "super admin",
    "A.8.2",  # privileged access rights
    "A.5.18",  # access rights
    "CC6.3",  # user authentication
]
_INACTIVE_USER_PATTERNS = ["inactive", "access review", "user lifecycle", "A.5.18", "CC6.2", "CC6.6"]


class _InvalidServiceAccount(ValueError):
    pass


def _parse_service_account(raw: Any) -> dict[str, Any]:
    """Accept the service account key as a JSON string or an already-parsed map."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise _InvalidServiceAccount("Invalid service account JSON format") from exc
    if not isinstance(raw, dict) or not raw.get("client_email") or not raw.get("private_key"):
        raise _InvalidServiceAccount("Invalid service account JSON format")
    return raw


def _error_message(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if body.get("error_description"):
                return str(body["error_description"])
            if isinstance(error, str):
                return error
        return f"Google API returned HTTP {exc.response.status_code}"
    return str(exc) or type(exc).__name__


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class GoogleWorkspaceProvider:
    """Directory-identity provider backed by the Admin SDK Directory API.

    Args:
        context: Integration ids, decrypted credentials and config.
        transport: Optional httpx transport, used by tests.
    """

    type: ClassVar[str] = "gsuite"
    display_name: ClassVar[str] = "Google Workspace"
    description: ClassVar[str] = "User directory, MFA status, and security settings"
    icon: ClassVar[str] = "google"

    required_credentials: ClassVar[tuple[CredentialField, ...]] = (
        CredentialField(
            key="serviceAccountJson",
            label="Service Account JSON",
            type="textarea",
            placeholder='{"type": "service_account", "project_id": "...", ...}',
            help_text="Service account key JSON with domain-wide delegation enabled",
        ),
        CredentialField(
            key="adminEmail",
            label="Admin Email",
            placeholder="admin@company.com",
            help_text="Email of a super admin to impersonate for API calls",
        ),
    )
    config_fields: ClassVar[tuple[ConfigField, ...]] = (
        ConfigField(
            key="domain",
            label="Domain",
            help_text="Primary Google Workspace domain (e.g., company.com)",
        ),
        ConfigField(
            key="includeDeletedUsers",
            label="Include Deleted Users",
            type="boolean",
            default=False,
            help_text="Include recently deleted users in collection",
        ),
    )

    def __init__(self, context: ProviderContext, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._context = context
        self._transport = transport
        self._connection = ConnectionState(self.display_name)
        self._client: httpx.AsyncClient | None = None
        self._domain: str | None = None

    @property
    def state(self) -> ProviderState:
        return self._connection.state

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> ConnectionResult:
        """Mint an access token for the impersonated admin and probe the users API."""
        missing = self._context.missing_credentials(self.required_credentials)
        if missing:
            return ConnectionResult(success=False, error=f"Missing required credentials: {', '.join(missing)}")

        try:
            service_account = _parse_service_account(self._context.credential("serviceAccountJson"))
        except _InvalidServiceAccount as exc:
            return ConnectionResult(success=False, error=str(exc))

        self._connection.begin()
        client = httpx.AsyncClient(
            base_url=DIRECTORY_API_URL,
            timeout=self._context.http_timeout,
            transport=self._transport,
        )

        try:
            access_token = await self._fetch_access_token(client, service_account)
            client.headers["Authorization"] = f"Bearer {access_token}"
            probe = await self._get_json(client, "/users", {"customer": CUSTOMER, "maxResults": 1})
        except (httpx.HTTPError, jwt.PyJWTError, ValueError, KeyError) as exc:
            await client.aclose()
            self._connection.mark_failed()
            message = _error_message(exc) if isinstance(exc, httpx.HTTPError) else str(exc)
            logger.error(
                "Google Workspace connection failed",
                integration_id=str(self._context.integration_id),
                error=message,
            )
            return ConnectionResult(success=False, error=message or "Failed to authenticate with Google Workspace")

        first_users = probe.get("users") or []
        first_email = first_users[0].get("primaryEmail", "") if first_users else ""
        email_domain = first_email.split("@")[1] if "@" in first_email else None
        self._domain = self._context.config_value("domain") or email_domain or "unknown"
        self._client = client
        self._connection.mark_connected()
        return ConnectionResult(
            success=True,
            metadata={
                "domain": self._domain,
                "projectId": service_account.get("project_id"),
                "serviceAccountEmail": service_account["client_email"],
            },
        )

    async def _fetch_access_token(self, client: httpx.AsyncClient, service_account: dict[str, Any]) -> str:
        token_uri = service_account.get("token_uri") or TOKEN_URI
        issued_at = int(time.time())
        assertion = jwt.encode(
            {
                "iss": service_account["client_email"],
                "scope": " ".join(SCOPES),
                "aud": token_uri,
                "sub": self._context.credential("adminEmail"),
                "iat": issued_at,
                "exp": issued_at + _ASSERTION_LIFETIME_SECONDS,
            },
            service_account["private_key"],
            algorithm="RS256",
        )
        response = await client.post(token_uri, data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion})
        response.raise_for_status()
        return response.json()["access_token"]

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._domain = None
        self._connection.reset()

    async def test_connection(self) -> TestResult:
        started = time.monotonic()

        if self._client is None:
            connected = await self.connect()
            if not connected.success:
                return TestResult(success=False, latency_ms=elapsed_ms(started), error=connected.error)

        try:
            await self._get_json(self._client, "/users", {"customer": CUSTOMER, "maxResults": 1})
        except httpx.HTTPError as exc:
            return TestResult(success=False, latency_ms=elapsed_ms(started), error=_error_message(exc))

        return TestResult(
            success=True,
            latency_ms=elapsed_ms(started),
            scopes=[
                "admin.directory.user.readonly",
                "admin.directory.group.readonly",
                "admin.reports.audit.readonly",
            ],
        )

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def get_available_collectors(self) -> list[CollectorInfo]:
        return [
            CollectorInfo(
                id="directory",
                name="User Directory",
                description="Collect users, groups, and organizational structure",
                evidence_types=("config",),
                control_categories=("user-management", "access-control", "identity"),
            ),
            CollectorInfo(
                id="security",
                name="Security Settings",
                description="Collect MFA status, admin roles, and security configurations",
                evidence_types=("config",),
                control_categories=("authentication", "access-control", "privileged-access"),
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
            {"directory": self._collect_directory, "security": self._collect_security},
            collector_ids,
            failure_codes={
                "directory": "DIRECTORY_COLLECTION_FAILED",
                "security": "SECURITY_COLLECTION_FAILED",
            },
        )

    async def _collect_directory(self) -> CollectorOutput:
        include_deleted = bool(self._context.config_value("includeDeletedUsers", False))
        raw_users = await self._list_all(
            "/users",
            "users",
            {"maxResults": _USER_PAGE_SIZE, "showDeleted": "true" if include_deleted else "false"},
        )
        raw_groups = await self._list_all("/groups", "groups", {"maxResults": _GROUP_PAGE_SIZE})

        users = [
            DirectoryUser(
                id=u.get("id"),
                email=u.get("primaryEmail"),
                name=(u.get("name") or {}).get("fullName"),
                is_admin=u.get("isAdmin", False),
                is_delegated_admin=u.get("isDelegatedAdmin", False),
                is_suspended=u.get("suspended", False),
                is_archived=u.get("archived", False),
                creation_time=u.get("creationTime"),
                last_login_time=u.get("lastLoginTime"),
                org_unit_path=u.get("orgUnitPath"),
                is_enrolled_in_2sv=u.get("isEnrolledIn2Sv", False),
                is_enforced_in_2sv=u.get("isEnforcedIn2Sv", False),
            )
            for u in raw_users
        ]
        groups = [
            DirectoryGroup(
                id=g.get("id"),
                email=g.get("email"),
                name=g.get("name"),
                description=g.get("description"),
                direct_members_count=g.get("directMembersCount"),
            )
            for g in raw_groups
        ]

        payload = GoogleDirectoryPayload(
            domain=self._domain,
            users=users,
            groups=groups,
            summary=DirectorySummary(
                total_users=len(users),
                active_users=sum(1 for u in users if not u.is_suspended and not u.is_archived),
                suspended_users=sum(1 for u in users if u.is_suspended),
                archived_users=sum(1 for u in users if u.is_archived),
                admin_users=sum(1 for u in users if u.is_admin or u.is_delegated_admin),
                total_groups=len(groups),
            ),
        )
        return CollectorOutput(payload=payload, items_collected=len(users) + len(groups))

    async def _collect_security(self) -> CollectorOutput:
        raw_users = await self._list_all("/users", "users", {"maxResults": _USER_PAGE_SIZE})

        active = [u for u in raw_users if not u.get("suspended") and not u.get("archived")]
        enrolled = [u for u in active if u.get("isEnrolledIn2Sv")]
        not_enrolled = [u for u in active if not u.get("isEnrolledIn2Sv")]
        enforced = [u for u in active if u.get("isEnforcedIn2Sv")]
        super_admins = [u for u in raw_users if u.get("isAdmin")]
        delegated_admins = [u for u in raw_users if u.get("isDelegatedAdmin") and not u.get("isAdmin")]

        now = datetime.now(UTC)
        inactive = []
        for user in active:
            last_login = _parse_timestamp(user.get("lastLoginTime"))
            if last_login is None or now - last_login > INACTIVE_AFTER:
                inactive.append(user)

        def admin_account(user: dict[str, Any]) -> AdminAccount:
            return AdminAccount(
                email=user.get("primaryEmail"),
                name=(user.get("name") or {}).get("fullName"),
                has_mfa=user.get("isEnrolledIn2Sv", False),
            )

        payload = GoogleSecurityPayload(
            mfa_users=[
                MfaUserStatus(
                    email=u.get("primaryEmail"),
                    is_enrolled_in_2sv=u.get("isEnrolledIn2Sv", False),
                    is_enforced_in_2sv=u.get("isEnforcedIn2Sv", False),
                )
                for u in active
            ],
            super_admins=[admin_account(u) for u in super_admins],
            delegated_admins=[admin_account(u) for u in delegated_admins],
            inactive_users=[
                InactiveUser(email=u.get("primaryEmail"), last_login_time=u.get("lastLoginTime")) for u in inactive
            ],
            summary=WorkspaceSecuritySummary(
                total_active_users=len(active),
                users_with_mfa=len(enrolled),
                users_without_mfa=len(not_enrolled),
                users_with_enforced_mfa=len(enforced),
                mfa_enforcement_rate=percentage(len(enrolled), len(active), when_empty=100),
                super_admin_count=len(super_admins),
                delegated_admin_count=len(delegated_admins),
                inactive_user_count=len(inactive),
                non_compliant_users=[u.get("primaryEmail", "") for u in not_enrolled],
            ),
        )
        return CollectorOutput(payload=payload, items_collected=len(raw_users))

    async def _list_all(self, path: str, result_key: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """Follow nextPageToken until the listing is exhausted."""
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            query = {"customer": CUSTOMER, **params}
            if page_token:
                query["pageToken"] = page_token
            body = await self._get_json(self._client, path, query)
            items.extend(body.get(result_key) or [])
            page_token = body.get("nextPageToken")
            if not page_token:
                return items

    @staticmethod
    async def _get_json(client: httpx.AsyncClient, path: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def generate_evidence(self, results: Sequence[CollectionResult]) -> list[GeneratedEvidence]:
        valid_from, valid_until = validity_window(self._context.evidence_validity_hours)
        evidence: list[GeneratedEvidence] = []

        for result in results:
            if not result.success or result.data is None:
                continue
            data = result.data

            if isinstance(data, GoogleDirectoryPayload):
                summary = data.summary
                evidence.append(
                    GeneratedEvidence(
                        title="Google Workspace User Directory",
                        description=(
                            f"User inventory: {summary.active_users} active users, "
                            f"{summary.total_groups} groups in {data.domain or self._domain}"
                        ),
                        evidence_type="config",
                        source=EVIDENCE_SOURCE,
                        metadata=data.model_dump(mode="json"),
                        valid_from=valid_from,
                        valid_until=valid_until,
                        control_patterns=list(_DIRECTORY_PATTERNS),
                        verification_result=VerificationResult(
                            is_implemented=summary.total_users > 0,
                            confidence=Confidence.HIGH,
                            reason=f"User directory maintained with {summary.active_users} active users",
                            metrics={
                                "totalUsers": summary.total_users,
                                "activeUsers": summary.active_users,
                                "adminUsers": summary.admin_users,
                                "totalGroups": summary.total_groups,
                            },
                        ),
                    )
                )
            elif isinstance(data, GoogleSecurityPayload):
                evidence.extend(self._security_evidence(data, valid_from, valid_until))

        return evidence

    @staticmethod
    def _security_evidence(
        data: GoogleSecurityPayload, valid_from: datetime, valid_until: datetime
    ) -> list[GeneratedEvidence]:
        summary = data.summary
        rate = summary.mfa_enforcement_rate
        mfa_implemented = rate >= MFA_THRESHOLD
        admins_protected = data.all_admins_have_mfa

        evidence = [
            GeneratedEvidence(
                title="Google Workspace MFA Enforcement Status",
                description=(
                    f"MFA status for {summary.total_active_users} active users. {rate}% have MFA enabled."
                ),
                evidence_type="config",
                source=EVIDENCE_SOURCE,
                metadata={
                    "mfa_users": [u.model_dump(mode="json") for u in data.mfa_users],
                    "summary": summary.model_dump(
                        mode="json",
                        include={
                            "total_active_users",
                            "users_with_mfa",
                            "users_without_mfa",
                            "mfa_enforcement_rate",
                            "non_compliant_users",
                        },
                    ),
                },
                valid_from=valid_from,
                valid_until=valid_until,
                control_patterns=list(_MFA_PATTERNS),
                verification_result=VerificationResult(
                    is_implemented=mfa_implemented,
                    confidence=rate_confidence(rate, high_at=100, medium_at=80),
                    reason=(
                        f"{rate}% of users have MFA enabled (threshold: {MFA_THRESHOLD}%)"
                        if mfa_implemented
                        else f"Only {rate}% of users have MFA (requires {MFA_THRESHOLD}%)"
                    ),
                    metrics={
                        "totalActiveUsers": summary.total_active_users,
                        "usersWithMFA": summary.users_with_mfa,
                        "usersWithoutMFA": summary.users_without_mfa,
                        "mfaEnforcementRate": rate,
                        "threshold": MFA_THRESHOLD,
                    },
                ),
            ),
            GeneratedEvidence(
                title="Google Workspace Privileged Access Status",
                description=(
                    f"Admin access: {summary.super_admin_count} super admins, "
                    f"{summary.delegated_admin_count} delegated admins"
                ),
                evidence_type="config",
                source=EVIDENCE_SOURCE,
                metadata={
                    "super_admins": [a.model_dump(mode="json") for a in data.super_admins],
                    "delegated_admins": [a.model_dump(mode="json") for a in data.delegated_admins],
                    "summary": {
                        "super_admin_count": summary.super_admin_count,
                        "delegated_admin_count": summary.delegated_admin_count,
                        "all_admins_have_mfa": admins_protected,
                    },
                },
                valid_from=valid_from,
                valid_until=valid_until,
                control_patterns=list(_PRIVILEGED_ACCESS_PATTERNS),
                verification_result=VerificationResult(
                    is_implemented=admins_protected,
                    confidence=Confidence.HIGH if admins_protected else Confidence.LOW,
                    reason=(
                        "All admin accounts have MFA enabled"
                        if admins_protected
                        else "Some admin accounts lack MFA protection"
                    ),
                    metrics={
                        "superAdminCount": summary.super_admin_count,
                        "delegatedAdminCount": summary.delegated_admin_count,
                        "allAdminsHaveMFA": admins_protected,
                    },
                ),
            ),
        ]

        if summary.inactive_user_count > 0:
            evidence.append(
                GeneratedEvidence(
                    title="Google Workspace Inactive Users",
                    description=f"{summary.inactive_user_count} users have not logged in for 90+ days",
                    evidence_type="report",
                    source=EVIDENCE_SOURCE,
                    metadata={
                        "inactive_users": [u.model_dump(mode="json") for u in data.inactive_users],
                        "count": summary.inactive_user_count,
                    },
                    valid_from=valid_from,
                    valid_until=valid_until,
                    control_patterns=list(_INACTIVE_USER_PATTERNS),
                    verification_result=VerificationResult(
                        is_implemented=False,
                        confidence=Confidence.MEDIUM,
                        reason=f"{summary.inactive_user_count} user accounts have been inactive for over 90 days",
                        metrics={
                            "inactiveUserCount": summary.inactive_user_count,
                            "totalActiveUsers": summary.total_active_users,
                        },
                    ),
                )
            )
        return evidence

    def get_control_mappings(self) -> list[ControlMapping]:
        return [
            ControlMapping(
                evidence_source=EVIDENCE_SOURCE,
                control_name_pattern=re.compile(r"mfa|multi.?factor|2fa|authentication|identity", re.IGNORECASE),
                control_tags=("authentication", "identity", "access-control"),
            ),
            ControlMapping(
                evidence_source=EVIDENCE_SOURCE,
                control_name_pattern=re.compile(r"user|directory|identity|access.?management", re.IGNORECASE),
                control_tags=("user-management", "identity", "access-control"),
            ),
            ControlMapping(
                evidence_source=EVIDENCE_SOURCE,
                control_name_pattern=re.compile(r"admin|privileged|super.?user", re.IGNORECASE),
                control_tags=("privileged-access", "admin", "access-control"),
            ),
        ]
