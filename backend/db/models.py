"""
MemberRank Database Models

8 tables for the rank assessment & promotion engine.

Tables:
  Ranks & members (1-3):
  1. manager_ranges          - Ordered range catalog with promotion/maintenance thresholds
  2. users                   - Members (role, current range, membership status)
  3. manager_monthly_sales   - Monthly qualifying sales per manager (aggregator input)

  Assessment (4-5):
  4. manager_assessments     - One reviewable proposal per (user, half-year period)
  5. range_change_history    - Audit trail of applied range changes

  Role promotion (6-8):
  6. promotion_progress      - Collaborator-maintained promotion signals per user
  7. promotion_applications  - Role upgrade applications (member -> FP aide -> manager)
  8. role_change_history     - Audit trail of role changes
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

USER_ROLES = ("MEMBER", "FP_AIDE", "MANAGER", "ADMIN")
MEMBERSHIP_STATUSES = ("ACTIVE", "SUSPENDED", "CANCELED")
ASSESSMENT_OUTCOMES = ("PROMOTE", "MAINTAIN", "DEMOTE_CANDIDATE")
ASSESSMENT_STATUSES = ("PENDING", "CONFIRMED", "DEMOTED", "EXPIRED")
APPLICATION_STATUSES = ("PENDING", "APPROVED", "REJECTED", "COMPLETED")


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ─── 1. Manager Ranges ─────────────────────────────────────────────────────


class ManagerRange(Base):
    """
    Ordered performance tier for manager-level members.

    promotion_threshold: half-year sales needed to enter this range from the one below.
    maintenance_threshold: minimum half-year sales to remain in this range.
    """

    __tablename__ = "manager_ranges"

    range_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    range_number = Column(Integer, nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    promotion_threshold = Column(Integer, nullable=False, default=0)
    maintenance_threshold = Column(Integer, nullable=False, default=0)
    updated_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("range_number >= 1", name="ck_manager_range_number"),
        CheckConstraint("promotion_threshold >= 0", name="ck_manager_range_promotion"),
        CheckConstraint("maintenance_threshold >= 0", name="ck_manager_range_maintenance"),
    )


# ─── 2. Users ──────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    user_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    member_code = Column(String(50), nullable=True, unique=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(20), nullable=False, default="MEMBER")
    current_range_number = Column(Integer, ForeignKey("manager_ranges.range_number"), nullable=True)
    membership_status = Column(String(20), nullable=False, default="ACTIVE")
    assessment_exempt_until = Column(DateTime, nullable=True)
    manager_promoted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(_in("role", USER_ROLES), name="ck_user_role"),
        CheckConstraint(_in("membership_status", MEMBERSHIP_STATUSES), name="ck_user_membership_status"),
        Index("ix_users_role_status", "role", "membership_status"),
    )

    assessments = relationship("ManagerAssessment", back_populates="user")


# ─── 3. Manager Monthly Sales ──────────────────────────────────────────────


class ManagerMonthlySales(Base):
    __tablename__ = "manager_monthly_sales"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.user_id"), nullable=False)
    month = Column(String(7), nullable=False)  # 'YYYY-MM'
    sales_amount = Column(Integer, nullable=False, default=0)
    insured_count = Column(Integer, nullable=False, default=0)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("user_id", "month", name="uq_monthly_sales_user_month"),)


# ─── 4. Manager Assessments ────────────────────────────────────────────────


class ManagerAssessment(Base):
    """
    Reviewable rank proposal for one manager in one half-year period.

    Lifecycle:
      1. Batch execution → status='PENDING' (outcome frozen here)
      2. Reviewer confirms → 'CONFIRMED' (promotion optionally applied)
      3. Reviewer demotes a DEMOTE_CANDIDATE → 'DEMOTED'
      4. Left unreviewed past retention → 'EXPIRED'
    """

    __tablename__ = "manager_assessments"

    assessment_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.user_id"), nullable=False)
    period_year = Column(Integer, nullable=False)
    period_half = Column(Integer, nullable=False)
    period_sales = Column(Integer, nullable=False, default=0)
    range_at_execution = Column(Integer, nullable=False)
    proposed_range_number = Column(Integer, nullable=False)
    outcome = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    range_change_applied = Column(Boolean, nullable=False, default=False)
    executed_by = Column(String(255), nullable=False)
    executed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    confirmed_by = Column(String(255), nullable=True)
    confirmed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "period_year", "period_half", name="uq_assessment_user_period"),
        CheckConstraint("period_half IN (1, 2)", name="ck_assessment_half"),
        CheckConstraint(_in("outcome", ASSESSMENT_OUTCOMES), name="ck_assessment_outcome"),
        CheckConstraint(_in("status", ASSESSMENT_STATUSES), name="ck_assessment_status"),
        Index("ix_assessments_period_status", "period_year", "period_half", "status"),
    )

    user = relationship("User", back_populates="assessments")


# ─── 5. Range Change History ───────────────────────────────────────────────


class RangeChangeHistory(Base):
    __tablename__ = "range_change_history"

    history_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.user_id"), nullable=False)
    assessment_id = Column(GUID(), ForeignKey("manager_assessments.assessment_id"), nullable=True)
    from_range_number = Column(Integer, nullable=True)
    to_range_number = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(255), nullable=False)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_range_history_user", "user_id", "changed_at"),)


# ─── 6. Promotion Progress ─────────────────────────────────────────────────


class PromotionProgress(Base):
    """Signals maintained by the onboarding/compensation collaborators."""

    __tablename__ = "promotion_progress"

    user_id = Column(GUID(), ForeignKey("users.user_id"), primary_key=True)
    test_passed = Column(Boolean, nullable=False, default=False)
    lp_meeting_completed = Column(Boolean, nullable=False, default=False)
    survey_completed = Column(Boolean, nullable=False, default=False)
    id_document_submitted = Column(Boolean, nullable=False, default=False)
    contract_achieved = Column(Boolean, nullable=False, default=False)
    compensation_average = Column(Integer, nullable=True)  # trailing 6-month average
    member_referrals = Column(Integer, nullable=True)
    fp_referrals = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


# ─── 7. Promotion Applications ─────────────────────────────────────────────


class PromotionApplication(Base):
    __tablename__ = "promotion_applications"

    application_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.user_id"), nullable=False)
    target_role = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    applied_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(255), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(255), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("target_role IN ('FP_AIDE', 'MANAGER')", name="ck_application_target_role"),
        CheckConstraint(_in("status", APPLICATION_STATUSES), name="ck_application_status"),
        Index("ix_applications_user_target_status", "user_id", "target_role", "status"),
        # One PENDING or APPROVED application per (user, target role).
        Index(
            "uq_applications_in_flight",
            "user_id",
            "target_role",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'APPROVED')"),
            sqlite_where=text("status IN ('PENDING', 'APPROVED')"),
        ),
    )


# ─── 8. Role Change History ────────────────────────────────────────────────


class RoleChangeHistory(Base):
    __tablename__ = "role_change_history"

    history_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(GUID(), ForeignKey("users.user_id"), nullable=False)
    application_id = Column(GUID(), ForeignKey("promotion_applications.application_id"), nullable=True)
    from_role = Column(String(20), nullable=False)
    to_role = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(255), nullable=False)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
