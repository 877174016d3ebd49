"""Static catalog of integration types shown to users when connecting."""

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class IntegrationType:
    """A connectable integration type.

    Attributes:
        type: Stable type key stored on Integration rows.
        display_name: Human-readable vendor name.
        description: One-line summary of what is collected.
        icon: Icon identifier for the presentation layer.
        available: False for announced but unimplemented types.
    """

    type: str
    display_name: str
    description: str
    icon: str
    available: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


INTEGRATION_TYPES: tuple[IntegrationType, ...] = (
    IntegrationType(
        type="github",
        display_name="GitHub",
        description="Repository security, branch protection, and vulnerability alerts",
        icon="github",
        available=True,
    ),
    IntegrationType(
        type="aws",
        display_name="Amazon Web Services",
        description="IAM, CloudTrail, S3 encryption, and security configuration",
        icon="aws",
        available=True,
    ),
    IntegrationType(
        type="gsuite",
        display_name="Google Workspace",
        description="User directory, MFA status, and security settings",
        icon="google",
        available=True,
    ),
    IntegrationType(
        type="azure_ad",
        display_name="Azure Active Directory",
        description="User directory, MFA, and conditional access",
        icon="microsoft",
        available=False,
    ),
    IntegrationType(
        type="jira",
        display_name="Jira",
        description="Issue tracking and task management",
        icon="jira",
        available=False,
    ),
    IntegrationType(
        type="slack",
        display_name="Slack",
        description="Communication and security notifications",
        icon="slack",
        available=False,
    ),
)
