"""
Confirmation & demotion workflow tests.

Covers:
  - PROMOTE confirmation applies the range change with history
  - declining a promotion, MAINTAIN confirmation
  - DEMOTE_CANDIDATE confirmation never lowers the range, demotion does
  - double demotion / double confirmation are invalid_state
  - stale assessments (member moved since execution) are refused
  - audit policy: best_effort keeps the transition, strict rolls it back
  - expiry and the demotion candidate queue
"""

import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from db.models import ManagerAssessment, RangeChangeHistory
from ranks.assessment import execute_assessment
from ranks.periods import period_for
from ranks.workflow import (
    AuditPolicy,
    confirm_assessment,
    demote_manager,
    expire_stale_assessments,
    list_demotion_candidates,
)
from conftest import FIXED_NOW, FakeSalesAggregator


async def _history(session_factory, user_id) -> list[RangeChangeHistory]:
    async with session_factory() as db:
        result = await db.execute(select(RangeChangeHistory).where(RangeChangeHistory.user_id == user_id))
        return result.scalars().all()


async def _status(session_factory, assessment_id) -> str:
    async with session_factory() as db:
        return (await db.get(ManagerAssessment, assessment_id)).status


def _broken_history_sink(monkeypatch):
    async def _fail(db, entry):
        raise OperationalError("INSERT INTO range_change_history", {}, Exception("disk I/O error"))

    monkeypatch.setattr("ranks.workflow._append_range_history", _fail)


@pytest.fixture
async def climber(ranges, make_user):
    return await make_user("Climber", range_number=1)


@pytest.fixture
async def slipping(ranges, make_user):
    return await make_user("Slipping", range_number=2)


@pytest.mark.asyncio
class TestConfirmAssessment:
    async def test_confirming_promotion_moves_range_and_writes_history(
        self, db, session_factory, climber, make_assessment, fetch_user
    ):
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2, sales=1_600_000)

        result = await confirm_assessment(db, assessment.assessment_id, confirmed_by="reviewer-1")

        assert result.success is True
        assert result.payload["range_change_applied"] is True
        assert result.payload["range_number"] == 2
        assert result.payload["history_recorded"] is True
        assert "promoted to range 2" in result.message
        assert (await fetch_user(climber.user_id)).current_range_number == 2
        assert await _status(session_factory, assessment.assessment_id) == "CONFIRMED"

        history = await _history(session_factory, climber.user_id)
        assert [(h.from_range_number, h.to_range_number, h.changed_by) for h in history] == [(1, 2, "reviewer-1")]
        assert "2024 H2" in history[0].reason

    async def test_declining_promotion_confirms_without_change(
        self, db, session_factory, climber, make_assessment, fetch_user
    ):
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2)

        result = await confirm_assessment(
            db, assessment.assessment_id, confirmed_by="reviewer-1", apply_range_change=False
        )

        assert result.success is True
        assert result.payload["range_change_applied"] is False
        assert result.payload["status"] == "CONFIRMED"
        assert (await fetch_user(climber.user_id)).current_range_number == 1
        assert await _history(session_factory, climber.user_id) == []

    async def test_maintain_is_acknowledged(self, db, session_factory, slipping, make_assessment, fetch_user):
        assessment = await make_assessment(slipping, outcome="MAINTAIN", proposed=2)

        result = await confirm_assessment(db, assessment.assessment_id, confirmed_by="reviewer-1")

        assert result.success is True
        assert result.payload["range_change_applied"] is False
        assert (await fetch_user(slipping.user_id)).current_range_number == 2
        assert await _status(session_factory, assessment.assessment_id) == "CONFIRMED"

    async def test_confirming_twice_is_invalid_state(self, db, climber, make_assessment, fetch_user):
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2)
        await confirm_assessment(db, assessment.assessment_id, confirmed_by="reviewer-1")

        second = await confirm_assessment(db, assessment.assessment_id, confirmed_by="reviewer-2")

        assert second.success is False
        assert second.code == "invalid_state"
        assert (await fetch_user(climber.user_id)).current_range_number == 2

    async def test_unknown_assessment_is_not_found(self, db, ranges):
        result = await confirm_assessment(db, uuid.uuid4(), confirmed_by="reviewer-1")
        assert result.success is False
        assert result.code == "not_found"

    async def test_missing_operator_is_invalid_argument(self, db, climber, make_assessment):
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2)
        result = await confirm_assessment(db, assessment.assessment_id, confirmed_by="")
        assert result.code == "invalid_argument"

    async def test_member_moved_since_execution_is_refused(
        self, db, test_db, session_factory, climber, make_assessment, fetch_user
    ):
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2)
        climber.current_range_number = 3
        await test_db.commit()

        result = await confirm_assessment(db, assessment.assessment_id, confirmed_by="reviewer-1")

        assert result.code == "invalid_state"
        assert (await fetch_user(climber.user_id)).current_range_number == 3
        assert await _status(session_factory, assessment.assessment_id) == "PENDING"


@pytest.mark.asyncio
class TestDemotion:
    async def test_confirm_then_demote_scenario(self, db, session_factory, ranges, make_user, fetch_user):
        """Range 2 manager with 1,000,000 sales: confirm keeps the range, demote lowers it."""
        manager = await make_user("Slipping", range_number=2)
        sales = FakeSalesAggregator({manager.user_id: 1_000_000})
        await execute_assessment(
            session_factory, period=period_for(2024, 2), executed_by="admin-1", sales=sales, now=FIXED_NOW
        )
        async with session_factory() as reader:
            assessment = (await reader.execute(select(ManagerAssessment))).scalar_one()
        assert assessment.outcome == "DEMOTE_CANDIDATE"
        assert assessment.proposed_range_number == 1

        confirmed = await confirm_assessment(
            db, assessment.assessment_id, confirmed_by="reviewer-1", apply_range_change=True
        )
        assert confirmed.success is True
        assert confirmed.payload["range_change_applied"] is False
        assert (await fetch_user(manager.user_id)).current_range_number == 2

        demoted = await demote_manager(db, assessment.assessment_id, executed_by="reviewer-1")
        assert demoted.success is True
        assert demoted.payload["from_range_number"] == 2
        assert demoted.payload["range_number"] == 1
        assert (await fetch_user(manager.user_id)).current_range_number == 1
        assert await _status(session_factory, assessment.assessment_id) == "DEMOTED"

    async def test_demotion_candidate_is_reviewed_once(self, db, slipping, make_assessment):
        assessment = await make_assessment(slipping, outcome="DEMOTE_CANDIDATE", proposed=1)
        await confirm_assessment(db, assessment.assessment_id, confirmed_by="reviewer-1")

        again = await confirm_assessment(db, assessment.assessment_id, confirmed_by="reviewer-2")
        assert again.code == "invalid_state"

    async def test_double_demotion_changes_range_once(
        self, db, session_factory, slipping, make_assessment, fetch_user
    ):
        assessment = await make_assessment(slipping, outcome="DEMOTE_CANDIDATE", proposed=1, sales=1_000_000)

        first = await demote_manager(db, assessment.assessment_id, executed_by="reviewer-1")
        second = await demote_manager(db, assessment.assessment_id, executed_by="reviewer-1")

        assert first.success is True
        assert second.success is False
        assert second.code == "invalid_state"
        assert (await fetch_user(slipping.user_id)).current_range_number == 1
        history = await _history(session_factory, slipping.user_id)
        assert len(history) == 1
        assert "1,000,000" in history[0].reason

    async def test_only_demotion_candidates_can_be_demoted(self, db, climber, make_assessment, fetch_user):
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2)

        result = await demote_manager(db, assessment.assessment_id, executed_by="reviewer-1")

        assert result.code == "invalid_state"
        assert (await fetch_user(climber.user_id)).current_range_number == 1

    async def test_expired_candidate_cannot_be_demoted(self, db, slipping, make_assessment, fetch_user):
        assessment = await make_assessment(slipping, outcome="DEMOTE_CANDIDATE", proposed=1, status="EXPIRED")

        result = await demote_manager(db, assessment.assessment_id, executed_by="reviewer-1")

        assert result.code == "invalid_state"
        assert (await fetch_user(slipping.user_id)).current_range_number == 2


@pytest.mark.asyncio
class TestAuditPolicy:
    async def test_best_effort_keeps_transition_when_history_fails(
        self, db, session_factory, climber, make_assessment, fetch_user, monkeypatch
    ):
        _broken_history_sink(monkeypatch)
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2)

        result = await confirm_assessment(
            db, assessment.assessment_id, confirmed_by="reviewer-1", audit_policy=AuditPolicy.BEST_EFFORT
        )

        assert result.success is True
        assert result.payload["history_recorded"] is False
        assert (await fetch_user(climber.user_id)).current_range_number == 2
        assert await _status(session_factory, assessment.assessment_id) == "CONFIRMED"

    async def test_strict_rolls_back_when_history_fails(
        self, db, session_factory, climber, make_assessment, fetch_user, monkeypatch
    ):
        _broken_history_sink(monkeypatch)
        assessment = await make_assessment(climber, outcome="PROMOTE", proposed=2)

        result = await confirm_assessment(
            db, assessment.assessment_id, confirmed_by="reviewer-1", audit_policy=AuditPolicy.STRICT
        )

        assert result.success is False
        assert result.code == "dependency_failure"
        assert (await fetch_user(climber.user_id)).current_range_number == 1
        assert await _status(session_factory, assessment.assessment_id) == "PENDING"

    async def test_strict_demotion_rolls_back(
        self, db, session_factory, slipping, make_assessment, fetch_user, monkeypatch
    ):
        _broken_history_sink(monkeypatch)
        assessment = await make_assessment(slipping, outcome="DEMOTE_CANDIDATE", proposed=1)

        result = await demote_manager(
            db, assessment.assessment_id, executed_by="reviewer-1", audit_policy=AuditPolicy.STRICT
        )

        assert result.code == "dependency_failure"
        assert (await fetch_user(slipping.user_id)).current_range_number == 2
        assert await _status(session_factory, assessment.assessment_id) == "PENDING"


@pytest.mark.asyncio
class TestReviewQueues:
    async def test_expire_keeps_the_last_closed_period(self, db, session_factory, climber, make_assessment):
        old = await make_assessment(climber, outcome="PROMOTE", proposed=2, year=2024, half=1)
        recent = await make_assessment(climber, outcome="MAINTAIN", proposed=1, year=2024, half=2)
        done = await make_assessment(climber, outcome="MAINTAIN", proposed=1, year=2023, half=2, status="CONFIRMED")

        expired = await expire_stale_assessments(db, current=period_for(2025, 1), keep_periods=1)

        assert expired == 1
        assert await _status(session_factory, old.assessment_id) == "EXPIRED"
        assert await _status(session_factory, recent.assessment_id) == "PENDING"
        assert await _status(session_factory, done.assessment_id) == "CONFIRMED"

    async def test_expired_assessment_cannot_be_confirmed(self, db, climber, make_assessment, fetch_user):
        old = await make_assessment(climber, outcome="PROMOTE", proposed=2, year=2023, half=1)
        await expire_stale_assessments(db, current=period_for(2025, 1))

        result = await confirm_assessment(db, old.assessment_id, confirmed_by="reviewer-1")

        assert result.code == "invalid_state"
        assert (await fetch_user(climber.user_id)).current_range_number == 1

    async def test_demotion_candidates_listing(self, db, ranges, make_user, make_assessment):
        low = await make_user("Low", range_number=2)
        lower = await make_user("Lower", range_number=3)
        fine = await make_user("Fine", range_number=2)
        await make_assessment(low, outcome="DEMOTE_CANDIDATE", proposed=1, sales=1_200_000)
        await make_assessment(lower, outcome="DEMOTE_CANDIDATE", proposed=2, sales=900_000)
        await make_assessment(fine, outcome="MAINTAIN", proposed=2, sales=1_700_000)

        listing = await list_demotion_candidates(db, period_for(2024, 2))

        assert listing["total_count"] == 2
        assert [c["name"] for c in listing["candidates"]] == ["Lower", "Low"]
        assert listing["period_summary"] == [{"year": 2024, "half": 2, "label": "2024 H2", "count": 2}]
