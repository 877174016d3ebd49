"""Typed collector payloads, one model per vendor × collector.

Collectors build these models from vendor responses, so malformed vendor data
is rejected at the provider boundary. Evidence generation and the matcher only
ever see validated fields. CollectorPayload is a discriminated union on the
`collector` field; parse_collector_payload() restores a payload from its
serialized form (e.g. evidence metadata).
"""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class GitHubRepository(_Payload):
    id: int
    name: str
    full_name: str
    owner: str
    private: bool = False
    visibility: str | None = None
    default_branch: str = "main"
    archived: bool = False
    disabled: bool = False
    fork: bool = False
    language: str | None = None
    open_issues_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None
    pushed_at: str | None = None


class RepositorySummary(_Payload):
    total: int
    private: int
    public: int
    archived: int
    forks: int


class GitHubReposPayload(_Payload):
    collector: Literal["repos"] = "repos"
    repositories: list[GitHubRepository]
    summary: RepositorySummary


class BranchProtectionDetail(_Payload):
    required_reviews: bool = False
    required_reviewers: int = 0
    dismiss_stale_reviews: bool = False
    require_code_owners: bool = False
    required_status_checks: bool = False
    strict_status_checks: bool = False
    enforce_admins: bool = False


class BranchProtectionEntry(_Payload):
    repo: str
    branch: str
    protected: bool
    protection: BranchProtectionDetail | None = None
    error: str | None = None


class BranchProtectionSummary(_Payload):
    total_repos: int
    protected_repos: int
    unprotected_repos: int
    with_required_reviews: int
    with_status_checks: int
    protection_rate: int


class GitHubBranchProtectionPayload(_Payload):
    collector: Literal["branch-protection"] = "branch-protection"
    branch_protection: list[BranchProtectionEntry]
    summary: BranchProtectionSummary


class RepositoryAlerts(_Payload):
    repo: str
    dependabot_alerts: int = 0
    critical_alerts: int = 0
    high_alerts: int = 0
    medium_alerts: int = 0
    low_alerts: int = 0
    error: str | None = None


class SecurityAlertsSummary(_Payload):
    total_repos: int
    scanned_repos: int
    repos_with_alerts: int
    total_alerts: int
    critical_alerts: int
    high_alerts: int
    medium_alerts: int
    low_alerts: int


class GitHubSecurityAlertsPayload(_Payload):
    collector: Literal["security-alerts"] = "security-alerts"
    security_alerts: list[RepositoryAlerts]
    summary: SecurityAlertsSummary


# ---------------------------------------------------------------------------
# AWS
# ---------------------------------------------------------------------------


class IamUser(_Payload):
    user_name: str
    user_id: str | None = None
    arn: str | None = None
    create_date: datetime | None = None
    password_last_used: datetime | None = None
    has_mfa: bool
    mfa_device_count: int
    access_key_count: int


class PasswordPolicy(_Payload):
    minimum_password_length: int | None = None
    require_symbols: bool = False
    require_numbers: bool = False
    require_uppercase_characters: bool = False
    require_lowercase_characters: bool = False
    allow_users_to_change_password: bool | None = None
    max_password_age: int | None = None
    password_reuse_prevention: int | None = None
    hard_expiry: bool | None = None

    @property
    def is_strong(self) -> bool:
        """At least 14 characters with every character class required."""
        return (
            (self.minimum_password_length or 0) >= 14
            and self.require_symbols
            and self.require_numbers
            and self.require_uppercase_characters
            and self.require_lowercase_characters
        )


class StaleAccessKey(_Payload):
    user_name: str
    key_id: str
    last_used: datetime


class IamSummary(_Payload):
    total_users: int
    users_with_mfa: int
    users_without_mfa: int
    mfa_enforcement_rate: int
    stale_access_keys: int
    non_compliant_users: list[str]


class AwsIamPayload(_Payload):
    collector: Literal["iam"] = "iam"
    users: list[IamUser]
    password_policy: PasswordPolicy | None = None
    stale_keys: list[StaleAccessKey] = Field(default_factory=list)
    summary: IamSummary


class CloudTrailTrail(_Payload):
    name: str
    s3_bucket_name: str | None = None
    is_multi_region: bool = False
    is_organization_trail: bool = False
    is_logging: bool = False
    has_log_file_validation: bool = False
    kms_key_id: str | None = None
    include_global_events: bool = False


class CloudTrailSummary(_Payload):
    total_trails: int
    active_trails: int
    multi_region_trails: int
    encrypted_trails: int
    validated_trails: int
    has_active_multi_region_trail: bool
    all_trails_logging: bool


class AwsCloudTrailPayload(_Payload):
    collector: Literal["cloudtrail"] = "cloudtrail"
    trails: list[CloudTrailTrail]
    summary: CloudTrailSummary


class S3Bucket(_Payload):
    name: str
    creation_date: datetime | None = None
    is_encrypted: bool = False
    encryption_type: str | None = None
    public_access_blocked: bool = False
    versioning_enabled: bool = False


class NonCompliantBucket(_Payload):
    name: str
    issues: list[str]


class S3Summary(_Payload):
    total_buckets: int
    encrypted_buckets: int
    unencrypted_buckets: int
    publicly_accessible: int
    versioned_buckets: int
    encryption_rate: int
    non_compliant_buckets: list[NonCompliantBucket]


class AwsS3Payload(_Payload):
    collector: Literal["s3"] = "s3"
    buckets: list[S3Bucket]
    summary: S3Summary


# ---------------------------------------------------------------------------
# Google Workspace
# ---------------------------------------------------------------------------


class DirectoryUser(_Payload):
    id: str | None = None
    email: str | None = None
    name: str | None = None
    is_admin: bool = False
    is_delegated_admin: bool = False
    is_suspended: bool = False
    is_archived: bool = False
    creation_time: str | None = None
    last_login_time: str | None = None
    org_unit_path: str | None = None
    is_enrolled_in_2sv: bool = False
    is_enforced_in_2sv: bool = False


class DirectoryGroup(_Payload):
    id: str | None = None
    email: str | None = None
    name: str | None = None
    description: str | None = None
    direct_members_count: int | None = None


class DirectorySummary(_Payload):
    total_users: int
    active_users: int
    suspended_users: int
    archived_users: int
    admin_users: int
    total_groups: int


class GoogleDirectoryPayload(_Payload):
    collector: Literal["directory"] = "directory"
    domain: str | None = None
    users: list[DirectoryUser]
    groups: list[DirectoryGroup]
    summary: DirectorySummary


class MfaUserStatus(_Payload):
    email: str | None = None
    is_enrolled_in_2sv: bool = False
    is_enforced_in_2sv: bool = False


class AdminAccount(_Payload):
    email: str | None = None
    name: str | None = None
    has_mfa: bool = False


class InactiveUser(_Payload):
    email: str | None = None
    last_login_time: str | None = None


class WorkspaceSecuritySummary(_Payload):
    total_active_users: int
    users_with_mfa: int
    users_without_mfa: int
    users_with_enforced_mfa: int
    mfa_enforcement_rate: int
    super_admin_count: int
    delegated_admin_count: int
    inactive_user_count: int
    non_compliant_users: list[str]


class GoogleSecurityPayload(_Payload):
    collector: Literal["security"] = "security"
    mfa_users: list[MfaUserStatus]
    super_admins: list[AdminAccount]
    delegated_admins: list[AdminAccount]
    inactive_users: list[InactiveUser]
    summary: WorkspaceSecuritySummary

    @property
    def all_admins_have_mfa(self) -> bool:
        return all(admin.has_mfa for admin in [*self.super_admins, *self.delegated_admins])


CollectorPayload = Annotated[
    GitHubReposPayload
    | GitHubBranchProtectionPayload
    | GitHubSecurityAlertsPayload
    | AwsIamPayload
    | AwsCloudTrailPayload
    | AwsS3Payload
    | GoogleDirectoryPayload
    | GoogleSecurityPayload,
    Field(discriminator="collector"),
]

_payload_adapter: TypeAdapter[CollectorPayload] = TypeAdapter(CollectorPayload)


def parse_collector_payload(data: dict) -> CollectorPayload:
    """Validate a serialized payload back into its typed model.

    Raises:
        pydantic.ValidationError: If the collector tag is unknown or fields are invalid.
    """
    return _payload_adapter.validate_python(data)
