"""
Promotion eligibility evaluator tests.

Covers:
  - all gates met → eligible, for both target roles
  - any single unmet gate → not eligible, and the gate is reported
  - missing signals count as unmet
  - thresholds are inclusive and configurable
"""

from dataclasses import fields, replace

import pytest

from ranks.eligibility import (
    BOOLEAN_GATES,
    THRESHOLD_GATES,
    EligibilityConditions,
    EligibilityThresholds,
    TargetRole,
    evaluate_eligibility,
)
from ranks.errors import InvalidArgument

ALL_MET = EligibilityConditions(
    test_passed=True,
    lp_meeting_completed=True,
    survey_completed=True,
    contract_achieved=True,
    compensation_average=70_000,
    member_referrals=8,
    fp_referrals=4,
)


@pytest.mark.parametrize("role", [TargetRole.FP_AIDE, TargetRole.MANAGER])
def test_all_conditions_met_is_eligible(role):
    result = evaluate_eligibility(ALL_MET, role)
    assert result.is_eligible is True
    assert result.unmet == []


@pytest.mark.parametrize("gate", BOOLEAN_GATES[TargetRole.MANAGER])
def test_any_unmet_boolean_gate_blocks_manager(gate):
    result = evaluate_eligibility(replace(ALL_MET, **{gate: False}), TargetRole.MANAGER)
    assert result.is_eligible is False
    assert result.unmet == [gate]


@pytest.mark.parametrize("gate", THRESHOLD_GATES[TargetRole.MANAGER])
def test_threshold_one_below_target_blocks_manager(gate):
    below = getattr(EligibilityThresholds(), gate) - 1
    result = evaluate_eligibility(replace(ALL_MET, **{gate: below}), TargetRole.MANAGER)
    assert result.is_eligible is False
    assert result.checks[gate].current == below
    assert result.checks[gate].target == below + 1


def test_fp_aide_ignores_manager_only_gates():
    conditions = EligibilityConditions(test_passed=True, lp_meeting_completed=True, survey_completed=True)
    result = evaluate_eligibility(conditions, "FP_AIDE")
    assert result.is_eligible is True
    assert set(result.checks) == {"test_passed", "lp_meeting_completed", "survey_completed"}


def test_missing_signals_are_unmet():
    result = evaluate_eligibility(EligibilityConditions(), TargetRole.MANAGER)
    assert result.is_eligible is False
    assert set(result.unmet) == {f.name for f in fields(EligibilityConditions)}


def test_custom_thresholds():
    strict = EligibilityThresholds(compensation_average=100_000, member_referrals=8, fp_referrals=4)
    result = evaluate_eligibility(ALL_MET, TargetRole.MANAGER, strict)
    assert result.unmet == ["compensation_average"]


def test_unknown_target_role_rejected():
    with pytest.raises(InvalidArgument):
        evaluate_eligibility(ALL_MET, "ADMIN")


def test_to_dict_shape():
    data = evaluate_eligibility(replace(ALL_MET, fp_referrals=1), TargetRole.MANAGER).to_dict()
    assert data["target_role"] == "MANAGER"
    assert data["is_eligible"] is False
    assert data["unmet"] == ["fp_referrals"]
    assert data["conditions"]["fp_referrals"] == {"met": False, "current": 1, "target": 4}
