"""
Promotion Eligibility Evaluator — multi-condition gate for role upgrades.

  FP_AIDE  : test passed, LP meeting completed, survey completed
  MANAGER  : FP_AIDE gates + compensation average, member referrals,
             FP referrals (threshold gates) + contract achieved

Eligibility is the AND of every applicable gate; a missing signal counts as
unmet. This module is side-effect free. Applying a promotion lives in
ranks.promotions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from core.config import get_settings
from ranks.errors import InvalidArgument


class TargetRole(str, Enum):
    FP_AIDE = "FP_AIDE"
    MANAGER = "MANAGER"


@dataclass(frozen=True)
class EligibilityConditions:
    test_passed: bool | None = None
    lp_meeting_completed: bool | None = None
    survey_completed: bool | None = None
    contract_achieved: bool | None = None
    compensation_average: int | None = None
    member_referrals: int | None = None
    fp_referrals: int | None = None


@dataclass(frozen=True)
class EligibilityThresholds:
    compensation_average: int = 70_000
    member_referrals: int = 8
    fp_referrals: int = 4

    @classmethod
    def from_settings(cls) -> "EligibilityThresholds":
        settings = get_settings()
        return cls(
            compensation_average=settings.promotion_compensation_average_target,
            member_referrals=settings.promotion_member_referral_target,
            fp_referrals=settings.promotion_fp_referral_target,
        )


@dataclass(frozen=True)
class GateCheck:
    met: bool
    current: Any = None
    target: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"met": self.met, "current": self.current, "target": self.target}


@dataclass
class EligibilityResult:
    target_role: TargetRole
    is_eligible: bool
    checks: dict[str, GateCheck] = field(default_factory=dict)
    unmet: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_role": self.target_role.value,
            "is_eligible": self.is_eligible,
            "conditions": {name: check.to_dict() for name, check in self.checks.items()},
            "unmet": list(self.unmet),
        }


BOOLEAN_GATES = {
    TargetRole.FP_AIDE: ("test_passed", "lp_meeting_completed", "survey_completed"),
    TargetRole.MANAGER: ("test_passed", "lp_meeting_completed", "survey_completed", "contract_achieved"),
}
THRESHOLD_GATES = {
    TargetRole.FP_AIDE: (),
    TargetRole.MANAGER: ("compensation_average", "member_referrals", "fp_referrals"),
}


def _coerce_role(target_role: TargetRole | str) -> TargetRole:
    try:
        return TargetRole(target_role)
    except ValueError:
        raise InvalidArgument(f"Unsupported promotion target role: {target_role!r}", target_role=str(target_role)) from None


def evaluate_eligibility(
    conditions: EligibilityConditions,
    target_role: TargetRole | str,
    thresholds: EligibilityThresholds | None = None,
) -> EligibilityResult:
    role = _coerce_role(target_role)
    thresholds = thresholds or EligibilityThresholds()

    checks: dict[str, GateCheck] = {}
    for gate in BOOLEAN_GATES[role]:
        value = getattr(conditions, gate)
        checks[gate] = GateCheck(met=value is True, current=bool(value), target=True)

    for gate in THRESHOLD_GATES[role]:
        value = getattr(conditions, gate)
        target = getattr(thresholds, gate)
        checks[gate] = GateCheck(met=value is not None and value >= target, current=value, target=target)

    unmet = [name for name, check in checks.items() if not check.met]
    return EligibilityResult(target_role=role, is_eligible=not unmet, checks=checks, unmet=unmet)
