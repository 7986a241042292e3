"""API router for organizations, users and quota usage."""
import secrets
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from orchestrator.agent.auth import OrgContext, get_org_context, require_admin
from orchestrator.agent.models import Organization, OrgUser
from orchestrator.agent.quota import check_quota_warnings, get_all_usage, get_period_end, get_period_start
from orchestrator.agent.schemas import (
    BootstrapAdmin,
    OrgCreate,
    OrgResponse,
    QuotaUsage,
    UsageResponse,
    UserCreate,
    UserResponse,
)
from orchestrator.agent.sms import parse_phone_number
from orchestrator.database import get_db

router = APIRouter(prefix="/v1", tags=["organizations"])


def generate_api_key() -> str:
    """Generate a secure random API key."""
    return secrets.token_urlsafe(32)


def _normalize_phone(raw: str | None) -> str | None:
    """E.164 form of a registration phone number, or 400 if it cannot be parsed."""
    if not raw:
        return None
    phone = parse_phone_number(raw)
    if not phone.is_valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid phone number: {raw}",
        )
    return phone.e164


# --- Organization Endpoints ---


@router.post("/orgs", response_model=OrgResponse, status_code=status.HTTP_201_CREATED)
def create_org(
    org_data: OrgCreate,
    db: Session = Depends(get_db),
) -> OrgResponse:
    """Create a new organization with a bootstrap admin user.

    This endpoint is open (no auth). The response carries the API key, which
    is not shown again.
    """
    admin_phone = _normalize_phone(org_data.admin_phone)
    org = Organization(
        org_id=str(uuid.uuid4()),
        name=org_data.name,
        plan=org_data.plan,
        api_key=generate_api_key(),
    )
    db.add(org)

    admin_user = OrgUser(
        user_id=str(uuid.uuid4()),
        org_id=org.org_id,
        email=org_data.admin_email.lower(),
        phone=admin_phone,
        role="admin",
    )
    db.add(admin_user)
    db.commit()
    db.refresh(org)
    db.refresh(admin_user)

    return OrgResponse(
        org_id=org.org_id,
        name=org.name,
        plan=org.plan,
        api_key=org.api_key,
        created_at=org.created_at,
        admin=BootstrapAdmin(
            user_id=admin_user.user_id,
            email=admin_user.email,
            phone=admin_user.phone,
            role=admin_user.role,
        ),
    )


@router.get("/orgs/me/usage", response_model=UsageResponse)
def get_usage(
    context: Annotated[OrgContext, Depends(get_org_context)],
    db: Session = Depends(get_db),
) -> UsageResponse:
    """Current month's quota usage and warnings for the caller's organization."""
    period_start = get_period_start()
    quotas = {
        quota_type: QuotaUsage(
            used=quota.used,
            limit=quota.limit,
            remaining=quota.remaining,
            percent_used=quota.percent_used,
        )
        for quota_type, quota in get_all_usage(db, context.org_id).items()
    }
    return UsageResponse(
        org_id=context.org_id,
        plan=context.org.plan,
        period_start=period_start,
        period_end=get_period_end(period_start),
        quotas=quotas,
        warnings=check_quota_warnings(db, context.org_id),
    )


# --- User Endpoints ---


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    user_data: UserCreate,
    context: Annotated[OrgContext, Depends(get_org_context)],
    db: Session = Depends(get_db),
) -> UserResponse:
    """Add a user to the caller's organization. Admins only."""
    require_admin(context)
    if user_data.org_id != context.org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot create users in another organization",
        )

    email = user_data.email.lower()
    existing = db.query(OrgUser).filter(
        OrgUser.org_id == context.org_id,
        OrgUser.email == email,
    ).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"User '{email}' already exists in this organization",
        )

    user = OrgUser(
        user_id=str(uuid.uuid4()),
        org_id=context.org_id,
        email=email,
        phone=_normalize_phone(user_data.phone),
        role=user_data.role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return UserResponse.model_validate(user)
