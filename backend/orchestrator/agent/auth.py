"""Authentication and organization context for the orchestration API.

API callers authenticate with ``X-Org-ID``, ``X-User-ID`` and ``X-API-Key``
headers. Provider webhooks authenticate with signatures instead and resolve
their principal from the sender (phone number or email address).
"""
import secrets
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from orchestrator.agent.models import Organization, OrgUser
from orchestrator.agent.rbac import Permission, has_permission
from orchestrator.database import get_db


@dataclass
class OrgContext:
    """Organization context populated from request headers.

    Attributes:
        org_id: The authenticated organization's ID.
        user_id: The authenticated user's ID.
        org: The Organization database record.
        user: The OrgUser database record.
    """
    org_id: str
    user_id: str
    org: Organization
    user: OrgUser

    @property
    def is_admin(self) -> bool:
        """Check if the current user has admin role."""
        return self.user.role == "admin"

    @property
    def principal(self) -> str:
        return f"user:{self.user_id}"


def _validate_and_authenticate(
    db: Session,
    x_org_id: str | None,
    x_user_id: str | None,
    x_api_key: str | None,
) -> OrgContext:
    """Validate headers and authenticate the caller.

    Raises:
        HTTPException: On missing headers, auth failure, or authorization failure.
    """
    if not x_org_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required header: X-Org-ID",
        )
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required header: X-User-ID",
        )
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required header: X-API-Key",
        )

    org = db.query(Organization).filter(Organization.org_id == x_org_id).first()

    # Constant-time comparison
    if not org or not secrets.compare_digest(org.api_key, x_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid organization ID or API key",
        )

    user = db.query(OrgUser).filter(OrgUser.user_id == x_user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User not found",
        )
    if user.org_id != x_org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User does not belong to this organization",
        )

    return OrgContext(org_id=x_org_id, user_id=x_user_id, org=org, user=user)


def get_org_context(
    x_org_id: Annotated[str | None, Header()] = None,
    x_user_id: Annotated[str | None, Header()] = None,
    x_api_key: Annotated[str | None, Header()] = None,
    db: Session = Depends(get_db),
) -> OrgContext:
    """FastAPI dependency returning the authenticated organization context.

    Raises:
        HTTPException: On missing headers, auth failure, or authorization failure.
    """
    return _validate_and_authenticate(db, x_org_id, x_user_id, x_api_key)


def require_permission(context: OrgContext, permission: Permission) -> None:
    """Raise 403 unless the caller's role grants ``permission``."""
    if not has_permission(context.user.role, permission):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{context.user.role}' is not authorized for this action",
        )


def require_admin(context: OrgContext) -> None:
    """Require admin role, raise 403 if not admin."""
    if not context.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{context.user.role}' is not authorized for this action",
        )


def find_user_by_phone(db: Session, e164: str, org_id: str | None = None) -> OrgUser | None:
    """User registered with this E.164 number, optionally within one organization."""
    query = db.query(OrgUser).filter(OrgUser.phone == e164)
    if org_id:
        query = query.filter(OrgUser.org_id == org_id)
    return query.order_by(OrgUser.created_at).first()


def find_user_by_email(db: Session, email: str, org_id: str | None = None) -> OrgUser | None:
    """User registered with this email address (case-insensitive)."""
    query = db.query(OrgUser).filter(OrgUser.email == email.lower())
    if org_id:
        query = query.filter(OrgUser.org_id == org_id)
    return query.order_by(OrgUser.created_at).first()


def find_org_admin(db: Session, org_id: str) -> OrgUser | None:
    """Earliest admin of an organization, used as the owner of webhook intakes."""
    return db.query(OrgUser).filter(
        OrgUser.org_id == org_id,
        OrgUser.role == "admin",
    ).order_by(OrgUser.created_at).first()
