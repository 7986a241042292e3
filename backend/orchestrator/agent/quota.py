"""Monthly per-organization quota enforcement."""
from dataclasses import dataclass
from datetime import datetime, timezone

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from orchestrator.agent.enums import Plan
from orchestrator.agent.models import Organization, UsageRollupMonthly
from orchestrator.errors import NotFoundError, QuotaExceededError

INTAKES = "intakes"

UNLIMITED = -1

# Monthly limits per plan; -1 means unlimited
PLAN_LIMITS: dict[Plan, dict[str, int]] = {
    Plan.FREE: {INTAKES: 10},
    Plan.STARTER: {INTAKES: 100},
    Plan.PROFESSIONAL: {INTAKES: 1000},
    Plan.ENTERPRISE: {INTAKES: UNLIMITED},
}

WARNING_THRESHOLD = 0.8


@dataclass(frozen=True)
class QuotaStatus:
    quota_type: str
    used: int
    limit: int
    plan: str

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int | None:
        return None if self.unlimited else max(self.limit - self.used, 0)

    @property
    def percent_used(self) -> float | None:
        if self.unlimited or self.limit == 0:
            return None
        return round(self.used / self.limit * 100, 1)


def get_period_start(now: datetime | None = None) -> str:
    """First day of the current quota month as YYYY-MM-01."""
    return (now or datetime.now(timezone.utc)).strftime("%Y-%m-01")


def get_period_end(period_start: str) -> str:
    """First day of the following month as YYYY-MM-01."""
    start = datetime.strptime(period_start, "%Y-%m-%d")
    return (start + relativedelta(months=1)).strftime("%Y-%m-01")


def get_limit(plan: str, quota_type: str) -> int:
    """Get the monthly limit for a plan.

    Raises:
        ValueError: If the quota type is unknown.
    """
    try:
        plan_enum = Plan(plan)
    except ValueError:
        plan_enum = Plan.FREE
    limits = PLAN_LIMITS[plan_enum]
    if quota_type not in limits:
        raise ValueError(f"Unknown quota type: {quota_type}")
    return limits[quota_type]


def get_usage(db: Session, org_id: str, quota_type: str, period_start: str | None = None) -> int:
    """Units used this month (0 if no rollup exists)."""
    rollup = db.query(UsageRollupMonthly).filter(
        UsageRollupMonthly.org_id == org_id,
        UsageRollupMonthly.period_start == (period_start or get_period_start()),
        UsageRollupMonthly.quota_type == quota_type,
    ).first()
    return rollup.units if rollup else 0


def _get_org(db: Session, org_id: str) -> Organization:
    org = db.query(Organization).filter(Organization.org_id == org_id).first()
    if not org:
        raise NotFoundError(f"Organization '{org_id}' not found")
    return org


def check_quota(db: Session, org_id: str, quota_type: str = INTAKES) -> QuotaStatus:
    """Current usage against the organization's plan limit."""
    org = _get_org(db, org_id)
    return QuotaStatus(
        quota_type=quota_type,
        used=get_usage(db, org_id, quota_type),
        limit=get_limit(org.plan, quota_type),
        plan=org.plan,
    )


def enforce_quota(db: Session, org_id: str, quota_type: str = INTAKES, requested_units: int = 1) -> QuotaStatus:
    """Return silently when the request fits, otherwise refuse it.

    Args:
        db: Database session.
        org_id: The organization ID.
        quota_type: Quota being consumed.
        requested_units: Units the caller is about to use.

    Returns:
        The quota status before the request.

    Raises:
        QuotaExceededError: If the request would go over the monthly limit.
    """
    status = check_quota(db, org_id, quota_type)
    if not status.unlimited and status.used + requested_units > status.limit:
        raise QuotaExceededError(quota_type, status.used, status.limit, status.plan)
    return status


def increment_usage(db: Session, org_id: str, quota_type: str = INTAKES, units: int = 1) -> None:
    """Increment the monthly rollup. Does not commit.

    Args:
        db: Database session.
        org_id: The organization ID.
        quota_type: Quota being consumed.
        units: Number of units to add.
    """
    period_start = get_period_start()
    rollup = db.query(UsageRollupMonthly).filter(
        UsageRollupMonthly.org_id == org_id,
        UsageRollupMonthly.period_start == period_start,
        UsageRollupMonthly.quota_type == quota_type,
    ).with_for_update().first()

    if rollup:
        rollup.units += units
        rollup.updated_at = datetime.now(timezone.utc)
    else:
        rollup = UsageRollupMonthly(
            org_id=org_id,
            period_start=period_start,
            quota_type=quota_type,
            units=units,
        )
        db.add(rollup)
        db.flush()


def get_all_usage(db: Session, org_id: str) -> dict[str, QuotaStatus]:
    """Status for every quota type on the organization's plan."""
    org = _get_org(db, org_id)
    try:
        plan = Plan(org.plan)
    except ValueError:
        plan = Plan.FREE
    return {quota_type: check_quota(db, org_id, quota_type) for quota_type in PLAN_LIMITS[plan]}


def check_quota_warnings(db: Session, org_id: str) -> list[str]:
    """Human-readable warnings for quotas at or above 80% use."""
    warnings = []
    for quota_type, status in get_all_usage(db, org_id).items():
        if status.unlimited or status.limit == 0:
            continue
        if status.used >= status.limit:
            warnings.append(f"{quota_type} quota exhausted ({status.used}/{status.limit})")
        elif status.used / status.limit >= WARNING_THRESHOLD:
            warnings.append(f"{quota_type} quota at {status.percent_used}% ({status.used}/{status.limit})")
    return warnings
