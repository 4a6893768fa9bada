from decimal import Decimal

import pytest

from compensation_engine import (
    ApplyScope,
    AssignmentScope,
    BonusModule,
    BonusType,
    CompPlan,
    Gate,
    GateType,
    InvalidInputError,
    PayoutType,
    PersonKeys,
    PlanAssignment,
    PlanStatus,
    PlanVersion,
    RuleBlock,
    resolve_plan,
)


def _plan(plan_id: str, status: PlanStatus = PlanStatus.ACTIVE, current: bool = True, **version) -> CompPlan:
    return CompPlan(
        plan_id=plan_id,
        name=f"Plan {plan_id}",
        status=status,
        versions=[PlanVersion(version_id=f"{plan_id}-v1", is_current=current, **version)],
    )


@pytest.fixture
def person() -> PersonKeys:
    return PersonKeys(person_id="P-001", role_id="ROLE-1", team_id="TEAM-1", agency_id="AGY-1")


def test_person_assignment_beats_role_and_agency(person: PersonKeys) -> None:
    assignments = [
        PlanAssignment(AssignmentScope.AGENCY, "AGY-1", _plan("AGENCY")),
        PlanAssignment(AssignmentScope.ROLE, "ROLE-1", _plan("ROLE")),
        PlanAssignment(AssignmentScope.PERSON, "P-001", _plan("PERSON")),
    ]
    assert resolve_plan(person, "2026-02", assignments).plan_id == "PERSON"


def test_falls_back_to_agency(person: PersonKeys) -> None:
    assignments = [PlanAssignment(AssignmentScope.AGENCY, "AGY-1", _plan("AGENCY"))]
    resolved = resolve_plan(person, "2026-02", assignments)
    assert resolved.plan_id == "AGENCY"
    assert resolved.version_id == "AGENCY-v1"


def test_latest_effective_start_wins_within_scope(person: PersonKeys) -> None:
    assignments = [
        PlanAssignment(AssignmentScope.TEAM, "TEAM-1", _plan("OLD"), effective_start_month="2025-06"),
        PlanAssignment(AssignmentScope.TEAM, "TEAM-1", _plan("NEW"), effective_start_month="2026-01"),
        PlanAssignment(AssignmentScope.TEAM, "TEAM-1", _plan("FUTURE"), effective_start_month="2026-05"),
    ]
    assert resolve_plan(person, "2026-02", assignments).plan_id == "NEW"
    assert resolve_plan(person, "2026-06", assignments).plan_id == "FUTURE"


def test_inactive_and_draft_plans_are_passed_over(person: PersonKeys) -> None:
    archived = _plan("ARCH", status=PlanStatus.ARCHIVED)
    disabled = _plan("OFF")
    disabled.active = False
    assignments = [
        PlanAssignment(AssignmentScope.PERSON, "P-001", _plan("DRAFT", status=PlanStatus.DRAFT)),
        PlanAssignment(AssignmentScope.PERSON, "P-001", archived),
        PlanAssignment(AssignmentScope.ROLE, "ROLE-1", disabled),
        PlanAssignment(AssignmentScope.ROLE, "ROLE-1", _plan("ROLE-INACTIVE"), active=False),
        PlanAssignment(AssignmentScope.TEAM, "TEAM-1", _plan("TEAM")),
    ]
    assert resolve_plan(person, "2026-02", assignments).plan_id == "TEAM"


def test_plan_without_current_version_continues_to_next_scope(person: PersonKeys) -> None:
    assignments = [
        PlanAssignment(AssignmentScope.PERSON, "P-001", _plan("NOVERSION", current=False)),
        PlanAssignment(AssignmentScope.AGENCY, "AGY-1", _plan("AGENCY")),
    ]
    assert resolve_plan(person, "2026-02", assignments).plan_id == "AGENCY"


def test_no_assignment_resolves_to_none(person: PersonKeys) -> None:
    assert resolve_plan(person, "2026-02", []) is None
    other = [PlanAssignment(AssignmentScope.PERSON, "P-999", _plan("OTHER"))]
    assert resolve_plan(person, "2026-02", other) is None


def test_missing_scope_key_is_skipped() -> None:
    person = PersonKeys(person_id="P-002", agency_id="AGY-1")
    assignments = [
        PlanAssignment(AssignmentScope.ROLE, None, _plan("NULL-ROLE")),
        PlanAssignment(AssignmentScope.AGENCY, "AGY-1", _plan("AGENCY")),
    ]
    assert resolve_plan(person, "2026-02", assignments).plan_id == "AGENCY"


def test_resolved_plan_orders_and_filters_components(person: PersonKeys) -> None:
    rules = [
        RuleBlock("Second", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, order_index=2),
        RuleBlock("Disabled", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, enabled=False, order_index=0),
        RuleBlock("First", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, order_index=1),
    ]
    gates = [Gate("Zeta", GateType.MIN_APPS, Decimal("1")), Gate("Alpha", GateType.MIN_PREMIUM, Decimal("1"))]
    modules = [
        BonusModule("Scorecard", BonusType.SCORECARD_TIER),
        BonusModule("Activity", BonusType.ACTIVITY_BONUS),
        BonusModule("Off", BonusType.ACTIVITY_BONUS, enabled=False),
    ]
    plan = _plan("P", rule_blocks=rules, gates=gates, bonus_modules=modules)
    resolved = resolve_plan(person, "2026-02", [PlanAssignment(AssignmentScope.PERSON, "P-001", plan)])

    assert [r.name for r in resolved.rule_blocks] == ["First", "Second"]
    assert [g.name for g in resolved.gates] == ["Alpha", "Zeta"]
    assert [m.name for m in resolved.bonus_modules] == ["Activity", "Scorecard"]


def test_bad_period_key_raises(person: PersonKeys) -> None:
    with pytest.raises(InvalidInputError):
        resolve_plan(person, "2026-13", [])
    with pytest.raises(InvalidInputError):
        resolve_plan(person, "Feb 2026", [])
