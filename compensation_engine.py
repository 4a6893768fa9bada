"""
Agency Compensation Engine v1.0
Commission & Bonus Evaluator for Insurance Agency Producers

Purpose: Resolve the compensation plan assigned to a person for a month, check
its payout gates, evaluate tiered commission rule blocks and bonus scorecards
against sold products and activity counts, and produce a payout breakdown with
per-rule traces, per-product attribution and tier progress.

Usage:
    engine = CompensationEngine()
    engine.load_people_roster("people.csv")
    engine.load_assignments("assignments.json")
    records = load_sold_records("sold_products_2026-02.csv")
    activities = load_activity_counts("activities_2026-02.csv")
    breakdown = engine.run_period("P-001", "2026-02", records, activities)
    breakdown.export("paycheck")
    breakdown.print_summary()
"""

import calendar
import json
import logging
import operator
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("CompensationEngine")

# =============================================================================
# 1. CONFIGURATION: ENUMERATIONS & DEFAULTS
# =============================================================================

class PolicyStatus(str, Enum):
    WRITTEN = "WRITTEN"
    ISSUED = "ISSUED"
    PAID = "PAID"
    STATUS_CHECK = "STATUS_CHECK"
    CANCELLED = "CANCELLED"


class PremiumCategory(str, Enum):
    PC = "PC"     # property & casualty
    FS = "FS"     # financial services
    IPS = "IPS"   # investment products


class ProductType(str, Enum):
    PERSONAL = "PERSONAL"
    BUSINESS = "BUSINESS"


class ApplyScope(str, Enum):
    PRODUCT = "PRODUCT"
    LOB = "LOB"
    PRODUCT_TYPE = "PRODUCT_TYPE"
    PREMIUM_CATEGORY = "PREMIUM_CATEGORY"
    BUCKET = "BUCKET"


class PayoutType(str, Enum):
    FLAT_PER_APP = "FLAT_PER_APP"
    PERCENT_OF_PREMIUM = "PERCENT_OF_PREMIUM"
    FLAT_LUMP_SUM = "FLAT_LUMP_SUM"


class TierMode(str, Enum):
    NONE = "NONE"
    TIERS = "TIERS"


class TierBasis(str, Enum):
    APP_COUNT = "APP_COUNT"
    PREMIUM_SUM = "PREMIUM_SUM"
    BUCKET_VALUE = "BUCKET_VALUE"


class GateType(str, Enum):
    MIN_APPS = "MIN_APPS"
    MIN_PREMIUM = "MIN_PREMIUM"
    MIN_BUCKET = "MIN_BUCKET"


class BonusType(str, Enum):
    ACTIVITY_BONUS = "ACTIVITY_BONUS"
    SCORECARD_TIER = "SCORECARD_TIER"


class Timeframe(str, Enum):
    MONTH = "MONTH"
    DAY = "DAY"


class MetricSource(str, Enum):
    PREMIUM_CATEGORY = "PREMIUM_CATEGORY"
    BUCKET = "BUCKET"
    APPS_COUNT = "APPS_COUNT"
    ACTIVITY = "ACTIVITY"
    TOTAL_PREMIUM = "TOTAL_PREMIUM"


class Operator(str, Enum):
    GTE = "GTE"
    GT = "GT"
    LTE = "LTE"
    LT = "LT"
    EQ = "EQ"


class RewardType(str, Enum):
    ADD_FLAT_DOLLARS = "ADD_FLAT_DOLLARS"
    ADD_PERCENT_OF_BUCKET = "ADD_PERCENT_OF_BUCKET"


class AssignmentScope(str, Enum):
    PERSON = "PERSON"
    ROLE = "ROLE"
    TEAM = "TEAM"
    AGENCY = "AGENCY"


class PlanStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


# Default paycheck view counts issued and paid business only
DEFAULT_STATUS_FILTER = frozenset({PolicyStatus.ISSUED, PolicyStatus.PAID})
WRITTEN_STATUS_FILTER = frozenset({PolicyStatus.WRITTEN, PolicyStatus.ISSUED, PolicyStatus.PAID})

# Plan assignments are checked most specific first
ASSIGNMENT_PRIORITY: List[AssignmentScope] = [
    AssignmentScope.PERSON,
    AssignmentScope.ROLE,
    AssignmentScope.TEAM,
    AssignmentScope.AGENCY,
]

PERIOD_KEY_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

ZERO = Decimal("0")
CENTS = Decimal("0.01")

CATEGORY_LABELS: Dict[PremiumCategory, str] = {
    PremiumCategory.PC: "P&C premium",
    PremiumCategory.FS: "FS premium",
    PremiumCategory.IPS: "IPS premium",
}

BASIS_LABELS: Dict[TierBasis, str] = {
    TierBasis.APP_COUNT: "apps",
    TierBasis.PREMIUM_SUM: "premium",
    TierBasis.BUCKET_VALUE: "bucket",
}


def status_filter_for(include_written: bool = False) -> frozenset:
    """Status set for the paycheck view; the written toggle adds WRITTEN."""
    return WRITTEN_STATUS_FILTER if include_written else DEFAULT_STATUS_FILTER


def fmt_money(value: Union[Decimal, int, float]) -> str:
    return f"${value:,.2f}"


def _fmt_number(value: Union[Decimal, int]) -> str:
    d = Decimal(value)
    if d == d.to_integral_value():
        return f"{int(d):,}"
    return f"{d:,.2f}"


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Coerce config/CSV values to Decimal; blanks, NaN and junk give default."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    text = str(value).strip().replace(",", "").replace("$", "")
    if not text:
        return default
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return default
    return parsed if parsed.is_finite() else default


def _parse_enum(enum_cls, raw: Any):
    """Map a raw tag to enum_cls; unknown tags log a warning and return None."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw).strip().upper())
    except ValueError:
        logger.warning(f"Unknown {enum_cls.__name__} value: '{raw}'")
        return None

# =============================================================================
# 2. INPUT RECORDS: SOLD PRODUCTS & ACTIVITY
# =============================================================================

@dataclass(frozen=True)
class SoldRecord:
    record_id: str
    product_id: str
    lob_id: str
    premium_category: Optional[PremiumCategory]
    product_type: Optional[ProductType]
    premium: Decimal
    date_sold: date
    status: PolicyStatus
    seller_id: str = ""
    product_name: str = ""
    lob_name: str = ""

    @property
    def sale_day(self) -> date:
        if isinstance(self.date_sold, datetime):
            return self.date_sold.date()
        return self.date_sold

    @property
    def product_label(self) -> str:
        return self.product_name or self.product_id


@dataclass(frozen=True)
class ActivityCount:
    activity_type_id: Optional[str]
    count: int
    person_id: str = ""
    activity_name: str = ""
    activity_date: Optional[date] = None  # only DAY-timeframe bonuses need it

# =============================================================================
# 3. PLAN DEFINITION
# =============================================================================

@dataclass(frozen=True)
class ScopeFilters:
    product_ids: frozenset = frozenset()       # product ids or names
    lob_ids: frozenset = frozenset()           # line-of-business ids or names
    product_types: frozenset = frozenset()
    premium_categories: frozenset = frozenset()


@dataclass(frozen=True)
class Bucket:
    bucket_id: str
    name: str
    includes_products: frozenset = frozenset()
    includes_lobs: frozenset = frozenset()

    def matches(self, record: SoldRecord) -> bool:
        return (
            record.product_id in self.includes_products
            or (bool(record.product_name) and record.product_name in self.includes_products)
            or record.lob_id in self.includes_lobs
            or (bool(record.lob_name) and record.lob_name in self.includes_lobs)
        )


@dataclass(frozen=True)
class TierRow:
    min_value: Decimal
    max_value: Optional[Decimal]   # None = unbounded
    payout_value: Decimal

    def contains(self, basis: Decimal) -> bool:
        return basis >= self.min_value and (self.max_value is None or basis < self.max_value)

    @property
    def range_label(self) -> str:
        if self.max_value is None:
            return f"{_fmt_number(self.min_value)}+"
        return f"{_fmt_number(self.min_value)} - {_fmt_number(self.max_value)}"


@dataclass
class RuleBlock:
    name: str
    apply_scope: Optional[ApplyScope]
    payout_type: Optional[PayoutType]
    base_payout_value: Decimal = ZERO          # fraction for PERCENT_OF_PREMIUM
    filters: ScopeFilters = field(default_factory=ScopeFilters)
    enabled: bool = True
    status_override: Optional[frozenset] = None
    tier_mode: Optional[TierMode] = TierMode.NONE
    tier_basis: Optional[TierBasis] = TierBasis.APP_COUNT
    min_threshold: Optional[Decimal] = None
    tiers: List[TierRow] = field(default_factory=list)
    bucket_id: Optional[str] = None
    bucket_category: Optional[PremiumCategory] = None
    order_index: int = 0


@dataclass
class Gate:
    name: str
    gate_type: Optional[GateType]
    threshold: Decimal = ZERO
    enabled: bool = True


@dataclass
class ActivityRequirement:
    activity_type_id: Optional[str]
    activity_name: str = ""
    minimum: Decimal = ZERO

    @property
    def label(self) -> str:
        return self.activity_name or self.activity_type_id or "Activity"


@dataclass
class ActivityBonusConfig:
    activity_type_id: Optional[str]
    threshold: Decimal = ZERO
    payout_value: Decimal = ZERO
    per_unit: bool = False
    activity_type_name: str = ""
    requirements: List[ActivityRequirement] = field(default_factory=list)
    timeframe: Timeframe = Timeframe.MONTH
    requires_all: bool = True


@dataclass
class Condition:
    metric_source: Optional[MetricSource]
    op: Optional[Operator]
    target: Decimal
    premium_category: Optional[PremiumCategory] = None
    bucket_id: Optional[str] = None
    activity_type_id: Optional[str] = None


@dataclass
class Reward:
    reward_type: Optional[RewardType]
    dollar_value: Decimal = ZERO
    percent_value: Decimal = ZERO    # fraction: 0.02 = 2% of the bucket
    premium_category: Optional[PremiumCategory] = None
    bucket_id: Optional[str] = None


@dataclass
class ScorecardTier:
    name: str
    order_index: int = 0
    requires_all: bool = True
    conditions: List[Condition] = field(default_factory=list)
    rewards: List[Reward] = field(default_factory=list)


@dataclass
class BonusModule:
    name: str
    bonus_type: Optional[BonusType]
    enabled: bool = True
    activity: Optional[ActivityBonusConfig] = None
    highest_tier_wins: bool = False
    stack_tiers: bool = False
    tiers: List[ScorecardTier] = field(default_factory=list)


@dataclass
class ResolvedPlan:
    plan_id: str
    version_id: str
    plan_name: str = ""
    rule_blocks: List[RuleBlock] = field(default_factory=list)
    gates: List[Gate] = field(default_factory=list)
    bonus_modules: List[BonusModule] = field(default_factory=list)
    buckets: List[Bucket] = field(default_factory=list)

    def bucket_index(self) -> Dict[str, Bucket]:
        return {b.bucket_id: b for b in self.buckets}

# =============================================================================
# 4. PLAN ASSIGNMENT HIERARCHY
# =============================================================================

@dataclass
class PlanVersion:
    version_id: str
    is_current: bool = False
    rule_blocks: List[RuleBlock] = field(default_factory=list)
    gates: List[Gate] = field(default_factory=list)
    bonus_modules: List[BonusModule] = field(default_factory=list)
    buckets: List[Bucket] = field(default_factory=list)


@dataclass
class CompPlan:
    plan_id: str
    name: str
    status: Optional[PlanStatus] = PlanStatus.DRAFT
    active: bool = True
    versions: List[PlanVersion] = field(default_factory=list)

    def current_version(self) -> Optional[PlanVersion]:
        return next((v for v in self.versions if v.is_current), None)


@dataclass
class PlanAssignment:
    scope_type: Optional[AssignmentScope]
    scope_id: Optional[str]
    plan: CompPlan
    active: bool = True
    effective_start_month: Optional[str] = None   # "YYYY-MM"; None = always


@dataclass
class PersonKeys:
    person_id: str
    role_id: Optional[str] = None
    team_id: Optional[str] = None
    agency_id: Optional[str] = None

    def scope_keys(self) -> List[Tuple[AssignmentScope, Optional[str]]]:
        ids = {
            AssignmentScope.PERSON: self.person_id,
            AssignmentScope.ROLE: self.role_id,
            AssignmentScope.TEAM: self.team_id,
            AssignmentScope.AGENCY: self.agency_id,
        }
        return [(scope, ids[scope]) for scope in ASSIGNMENT_PRIORITY]

# =============================================================================
# 5. INPUT VALIDATION (boundary checks before evaluation)
# =============================================================================

class InvalidInputError(ValueError):
    """Caller-supplied input rejected before it reaches the evaluation core."""


def validate_period_key(period: str) -> Tuple[int, int]:
    """Parse a "YYYY-MM" period key into (year, month)."""
    match = PERIOD_KEY_PATTERN.match(str(period or "").strip())
    if not match:
        raise InvalidInputError(f"Period key must look like YYYY-MM, got '{period}'")
    return int(match.group(1)), int(match.group(2))


def period_bounds(period: str) -> Tuple[date, date]:
    year, month = validate_period_key(period)
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def validate_plan(plan: ResolvedPlan) -> None:
    for gate in plan.gates:
        if gate.threshold < 0:
            raise InvalidInputError(f"Gate '{gate.name}' has a negative threshold ({gate.threshold})")
    for rule in plan.rule_blocks:
        if rule.min_threshold is not None and rule.min_threshold < 0:
            raise InvalidInputError(
                f"Rule block '{rule.name}' has a negative minimum threshold ({rule.min_threshold})"
            )
    for module in plan.bonus_modules:
        cfg = module.activity
        if cfg is None:
            continue
        if cfg.threshold < 0:
            raise InvalidInputError(f"Activity bonus '{module.name}' has a negative threshold ({cfg.threshold})")
        for req in cfg.requirements:
            if req.minimum < 0:
                raise InvalidInputError(
                    f"Activity bonus '{module.name}' requirement '{req.label}' has a negative minimum"
                )


def validate_records(records: List[SoldRecord]) -> None:
    for record in records:
        if record.premium is None or record.premium < 0:
            raise InvalidInputError(f"Sold record {record.record_id} has invalid premium ({record.premium})")


def validate_activities(activities: List[ActivityCount]) -> None:
    for activity in activities:
        if activity.count < 0:
            raise InvalidInputError(
                f"Activity count for '{activity.activity_type_id or activity.activity_name}' is negative"
            )

# =============================================================================
# 6. SCOPE FILTER
# =============================================================================

def passes_status(record: SoldRecord, statuses: Iterable[PolicyStatus]) -> bool:
    return record.status in statuses


def filter_by_status(records: Iterable[SoldRecord], statuses: Iterable[PolicyStatus]) -> List[SoldRecord]:
    statuses = frozenset(statuses)
    return [r for r in records if passes_status(r, statuses)]


def _match_product(record: SoldRecord, rule: RuleBlock, buckets: Dict[str, Bucket]) -> bool:
    ids = rule.filters.product_ids
    return record.product_id in ids or (bool(record.product_name) and record.product_name in ids)


def _match_lob(record: SoldRecord, rule: RuleBlock, buckets: Dict[str, Bucket]) -> bool:
    ids = rule.filters.lob_ids
    return record.lob_id in ids or (bool(record.lob_name) and record.lob_name in ids)


def _match_product_type(record: SoldRecord, rule: RuleBlock, buckets: Dict[str, Bucket]) -> bool:
    return record.product_type in rule.filters.product_types


def _match_premium_category(record: SoldRecord, rule: RuleBlock, buckets: Dict[str, Bucket]) -> bool:
    return record.premium_category in rule.filters.premium_categories


def _match_bucket(record: SoldRecord, rule: RuleBlock, buckets: Dict[str, Bucket]) -> bool:
    bucket = buckets.get(rule.bucket_id) if rule.bucket_id else None
    return bucket is not None and bucket.matches(record)


SCOPE_MATCHERS: Dict[ApplyScope, Callable[[SoldRecord, RuleBlock, Dict[str, Bucket]], bool]] = {
    ApplyScope.PRODUCT: _match_product,
    ApplyScope.LOB: _match_lob,
    ApplyScope.PRODUCT_TYPE: _match_product_type,
    ApplyScope.PREMIUM_CATEGORY: _match_premium_category,
    ApplyScope.BUCKET: _match_bucket,
}


def matches_scope(record: SoldRecord, rule: RuleBlock, buckets: Optional[Dict[str, Bucket]] = None) -> bool:
    matcher = SCOPE_MATCHERS.get(rule.apply_scope)
    if matcher is None:
        return False
    return matcher(record, rule, buckets or {})


def filter_scope(
    records: Iterable[SoldRecord],
    rule: RuleBlock,
    default_statuses: Iterable[PolicyStatus],
    buckets: Optional[Dict[str, Bucket]] = None,
) -> List[SoldRecord]:
    """
    Records a rule applies to: its scope matches and the status is eligible.
    The rule's status override, when set, replaces the period default.
    """
    statuses = frozenset(rule.status_override or default_statuses)
    return [r for r in records if passes_status(r, statuses) and matches_scope(r, rule, buckets)]

# =============================================================================
# 7. METRIC AGGREGATOR
# =============================================================================

def count_apps(records: Iterable[SoldRecord]) -> int:
    return sum(1 for _ in records)


def sum_premium(records: Iterable[SoldRecord]) -> Decimal:
    return sum((r.premium for r in records), ZERO)


def bucket_sums(records: Iterable[SoldRecord]) -> Dict[PremiumCategory, Decimal]:
    totals = {category: ZERO for category in PremiumCategory}
    for r in records:
        if r.premium_category is not None:
            totals[r.premium_category] += r.premium
    return totals


@dataclass
class PeriodMetrics:
    apps_count: int = 0
    premium_sum: Decimal = ZERO
    category_totals: Dict[PremiumCategory, Decimal] = field(default_factory=dict)
    bucket_totals: Dict[str, Decimal] = field(default_factory=dict)
    bucket_names: Dict[str, str] = field(default_factory=dict)
    activity_by_type: Dict[str, int] = field(default_factory=dict)
    activity_by_name: Dict[str, int] = field(default_factory=dict)
    activity_by_day_type: Dict[str, Dict[str, int]] = field(default_factory=dict)
    activity_by_day_name: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def category_total(self, category: Optional[PremiumCategory]) -> Decimal:
        return self.category_totals.get(category, ZERO)

    def bucket_value(self, bucket_id: Optional[str] = None, category: Optional[PremiumCategory] = None) -> Decimal:
        """Custom bucket total, else premium-category total, else all premium."""
        if bucket_id:
            return self.bucket_totals.get(bucket_id, ZERO)
        if category is not None:
            return self.category_total(category)
        return self.premium_sum

    def activity_count(self, activity_type_id: Optional[str] = None, activity_name: str = "") -> int:
        if activity_type_id:
            return self.activity_by_type.get(activity_type_id, 0)
        if activity_name:
            return self.activity_by_name.get(activity_name, 0)
        return 0


def aggregate_metrics(
    records: Iterable[SoldRecord],
    activities: Iterable[ActivityCount] = (),
    buckets: Iterable[Bucket] = (),
) -> PeriodMetrics:
    """Reduce status-eligible records and activity rows to period scalars."""
    records = list(records)
    metrics = PeriodMetrics(
        apps_count=count_apps(records),
        premium_sum=sum_premium(records),
        category_totals=bucket_sums(records),
    )
    for bucket in buckets:
        metrics.bucket_totals[bucket.bucket_id] = sum_premium(r for r in records if bucket.matches(r))
        metrics.bucket_names[bucket.bucket_id] = bucket.name

    by_type: Dict[str, int] = defaultdict(int)
    by_name: Dict[str, int] = defaultdict(int)
    by_day_type: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    by_day_name: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for a in activities:
        day = a.activity_date.isoformat()[:10] if a.activity_date else None
        if a.activity_type_id:
            by_type[a.activity_type_id] += a.count
            if day:
                by_day_type[day][a.activity_type_id] += a.count
        if a.activity_name:
            by_name[a.activity_name] += a.count
            if day:
                by_day_name[day][a.activity_name] += a.count

    metrics.activity_by_type = dict(by_type)
    metrics.activity_by_name = dict(by_name)
    metrics.activity_by_day_type = {d: dict(v) for d, v in by_day_type.items()}
    metrics.activity_by_day_name = {d: dict(v) for d, v in by_day_name.items()}
    return metrics

# =============================================================================
# 8. PLAN RESOLVER
# =============================================================================

def _assignment_in_effect(assignment: PlanAssignment, period: str) -> bool:
    if not assignment.active:
        return False
    start = assignment.effective_start_month
    if start and start[:7] > period:
        return False
    plan = assignment.plan
    return plan.active and plan.status is PlanStatus.ACTIVE


def _resolve_version(plan: CompPlan, version: PlanVersion) -> ResolvedPlan:
    return ResolvedPlan(
        plan_id=plan.plan_id,
        version_id=version.version_id,
        plan_name=plan.name,
        rule_blocks=sorted((r for r in version.rule_blocks if r.enabled), key=lambda r: r.order_index),
        gates=sorted((g for g in version.gates if g.enabled), key=lambda g: g.name),
        bonus_modules=sorted((m for m in version.bonus_modules if m.enabled), key=lambda m: m.name),
        buckets=list(version.buckets),
    )


def resolve_plan(
    person: PersonKeys,
    period: str,
    assignments: Iterable[PlanAssignment],
) -> Optional[ResolvedPlan]:
    """
    Pick the plan that applies to a person for a period.

    Scopes are checked Person -> Role -> Team -> Agency. Within a scope the
    in-effect assignment with the latest effective start wins. Returns None
    when no scope has an active plan with a current version.
    """
    validate_period_key(period)
    assignments = list(assignments)

    for scope_type, scope_id in person.scope_keys():
        if not scope_id:
            continue
        candidates = [
            a for a in assignments
            if a.scope_type is scope_type and a.scope_id == scope_id and _assignment_in_effect(a, period)
        ]
        if not candidates:
            continue
        candidates.sort(key=lambda a: a.effective_start_month or "", reverse=True)
        assignment = candidates[0]
        version = assignment.plan.current_version()
        if version is None:
            logger.warning(
                f"Plan '{assignment.plan.name}' assigned at {scope_type.value} {scope_id} has no current version"
            )
            continue
        logger.info(
            f"Resolved plan '{assignment.plan.name}' for {person.person_id} in {period} "
            f"via {scope_type.value} assignment"
        )
        return _resolve_version(assignment.plan, version)

    logger.info(f"No plan assigned to {person.person_id} for {period}")
    return None

# =============================================================================
# 9. GATE EVALUATOR
# =============================================================================

@dataclass
class GateStatus:
    blocked: bool = False
    reasons: List[str] = field(default_factory=list)
    traces: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def evaluate_gates(
    gates: List[Gate],
    records: Iterable[SoldRecord],
    statuses: Iterable[PolicyStatus],
) -> GateStatus:
    """
    Check every enabled gate against the status-eligible records.

    MIN_BUCKET is checked against total premium rather than a per-bucket sum.
    """
    status = GateStatus()
    gates = [g for g in gates if g.enabled]
    if not gates:
        return status

    eligible = filter_by_status(records, statuses)
    apps = count_apps(eligible)
    premium = sum_premium(eligible)

    for gate in gates:
        threshold = gate.threshold
        if gate.gate_type is GateType.MIN_APPS:
            if apps < threshold:
                short = threshold - apps
                status.reasons.append(
                    f"Requires at least {_fmt_number(threshold)} apps to unlock payouts "
                    f"({apps} so far, {_fmt_number(short)} more needed)."
                )
            else:
                status.traces.append(f'Gate "{gate.name}" passed: {apps} apps >= {_fmt_number(threshold)}.')
        elif gate.gate_type is GateType.MIN_PREMIUM:
            if premium < threshold:
                status.reasons.append(
                    f"Requires at least {fmt_money(threshold)} premium to unlock payouts "
                    f"({fmt_money(threshold - premium)} short)."
                )
            else:
                status.traces.append(f'Gate "{gate.name}" passed: {fmt_money(premium)} >= {fmt_money(threshold)}.')
        elif gate.gate_type is GateType.MIN_BUCKET:
            if premium < threshold:
                status.reasons.append(
                    f"Requires bucket total of {fmt_money(threshold)} to unlock payouts "
                    f"({fmt_money(threshold - premium)} short)."
                )
            else:
                status.traces.append(
                    f'Gate "{gate.name}" (bucket) passed using total premium {fmt_money(premium)}.'
                )
        else:
            status.warnings.append(f'Gate "{gate.name}" ignored: unknown gate type.')
            logger.warning(f"Gate '{gate.name}' has no recognised gate type; ignoring it")

    status.blocked = len(status.reasons) > 0
    if status.blocked:
        logger.warning(f"Payouts blocked by {len(status.reasons)} unmet gate(s)")
    return status

# =============================================================================
# 10. RULE BLOCK EVALUATOR
# =============================================================================

@dataclass
class TierStatus:
    label: str
    achieved: bool
    payout_label: str
    basis_value: Decimal
    basis_label: str
    remaining: Decimal = ZERO
    left_text: Optional[str] = None


@dataclass
class RuleResult:
    name: str
    amount: Decimal
    payout_value: Decimal
    basis_value: Decimal
    apps_count: int
    premium_sum: Decimal
    detail: str
    trace: str
    per_product: Dict[str, Decimal] = field(default_factory=dict)
    per_record: Dict[str, Decimal] = field(default_factory=dict)
    record_ids: List[str] = field(default_factory=list)
    tiers_status: Optional[List[TierStatus]] = None
    selected_tier: Optional[int] = None


def select_tier(tiers: List[TierRow], basis: Decimal) -> Optional[int]:
    """
    Index of the first tier whose [min, max) range holds basis.

    When no range holds it the last tier is used, including a basis below the
    first tier's minimum or inside a gap between tiers.
    """
    if not tiers:
        return None
    for idx, tier in enumerate(tiers):
        if tier.contains(basis):
            return idx
    return len(tiers) - 1


def tier_basis_value(rule: RuleBlock, apps: int, premium: Decimal, metrics: PeriodMetrics) -> Decimal:
    if rule.tier_basis is TierBasis.PREMIUM_SUM:
        return premium
    if rule.tier_basis is TierBasis.BUCKET_VALUE:
        return metrics.bucket_value(rule.bucket_id, rule.bucket_category)
    return Decimal(apps)


def payout_label(payout_type: PayoutType, value: Decimal) -> str:
    if payout_type is PayoutType.FLAT_PER_APP:
        return f"{fmt_money(value)} per app"
    if payout_type is PayoutType.PERCENT_OF_PREMIUM:
        return f"{value:.2%}"
    return fmt_money(value)


def _fmt_basis(basis: TierBasis, value: Decimal) -> str:
    if basis is TierBasis.APP_COUNT:
        return _fmt_number(value)
    return fmt_money(value)


def _pay_flat_per_app(value: Decimal, records: List[SoldRecord], premium: Decimal) -> Tuple[Decimal, Dict[str, Decimal], str]:
    amount = value * len(records)
    per_record = {r.record_id: value for r in records}
    return amount, per_record, f"Flat per app {fmt_money(value)} x {len(records)} apps"


def _pay_percent_of_premium(value: Decimal, records: List[SoldRecord], premium: Decimal) -> Tuple[Decimal, Dict[str, Decimal], str]:
    amount = value * premium
    per_record = {
        r.record_id: (r.premium * amount / premium) if premium > 0 else ZERO
        for r in records
    }
    return amount, per_record, f"Percent of premium {value:.2%} on {fmt_money(premium)}"


def _pay_lump_sum(value: Decimal, records: List[SoldRecord], premium: Decimal) -> Tuple[Decimal, Dict[str, Decimal], str]:
    each = value / len(records) if records else ZERO
    per_record = {r.record_id: each for r in records}
    return value, per_record, f"Lump sum {fmt_money(value)} split across {len(records)} records"


PAYOUT_CALCULATORS: Dict[PayoutType, Callable[[Decimal, List[SoldRecord], Decimal], Tuple[Decimal, Dict[str, Decimal], str]]] = {
    PayoutType.FLAT_PER_APP: _pay_flat_per_app,
    PayoutType.PERCENT_OF_PREMIUM: _pay_percent_of_premium,
    PayoutType.FLAT_LUMP_SUM: _pay_lump_sum,
}


def _rule_config_problem(rule: RuleBlock) -> Optional[str]:
    if rule.apply_scope is None:
        return "unknown apply scope"
    if rule.apply_scope is ApplyScope.BUCKET and not rule.bucket_id:
        return "bucket scope without a bucket"
    if rule.payout_type is None:
        return "unknown payout type"
    if rule.tier_mode is None:
        return "unknown tier mode"
    if rule.tier_mode is TierMode.TIERS and not rule.tiers:
        return "tiered without tier rows"
    if rule.tier_basis is None and (rule.tier_mode is TierMode.TIERS or rule.min_threshold is not None):
        return "unknown tier basis"
    return None


def build_tier_ladder(rule: RuleBlock, basis: Decimal) -> List[TierStatus]:
    """Progress row for every tier so callers can show the upgrade path."""
    basis_label = BASIS_LABELS[rule.tier_basis]
    ladder = []
    for tier in rule.tiers:
        achieved = tier.contains(basis)
        remaining = ZERO if achieved else max(ZERO, tier.min_value - basis)
        left_text = None
        if remaining > 0:
            left_text = f"{_fmt_basis(rule.tier_basis, remaining)} {basis_label} left"
        ladder.append(TierStatus(
            label=tier.range_label,
            achieved=achieved,
            payout_label=payout_label(rule.payout_type, tier.payout_value),
            basis_value=basis,
            basis_label=basis_label,
            remaining=remaining,
            left_text=left_text,
        ))
    return ladder


def evaluate_rule_block(
    rule: RuleBlock,
    records: Iterable[SoldRecord],
    default_statuses: Iterable[PolicyStatus],
    metrics: PeriodMetrics,
    buckets: Optional[Dict[str, Bucket]] = None,
    warnings: Optional[List[str]] = None,
) -> Optional[RuleResult]:
    """
    Commission for one rule block, or None when the rule does not apply.

    A rule is skipped (never raised on) when its configuration is malformed,
    when no record falls inside its scope, or when its basis is under the
    minimum threshold.
    """
    problem = _rule_config_problem(rule)
    if problem:
        message = f'Rule "{rule.name}" skipped: {problem}.'
        logger.warning(message)
        if warnings is not None:
            warnings.append(message)
        return None

    scoped = filter_scope(records, rule, default_statuses, buckets)
    if not scoped:
        logger.debug(f"Rule '{rule.name}' has no records in scope")
        return None

    apps = len(scoped)
    premium = sum_premium(scoped)
    basis = tier_basis_value(rule, apps, premium, metrics)

    if rule.min_threshold is not None and basis < rule.min_threshold:
        logger.debug(f"Rule '{rule.name}' basis {basis} below minimum {rule.min_threshold}")
        return None

    tiered = rule.tier_mode is TierMode.TIERS
    selected = select_tier(rule.tiers, basis) if tiered else None
    value = rule.tiers[selected].payout_value if tiered else rule.base_payout_value

    calculator = PAYOUT_CALCULATORS[rule.payout_type]
    amount, per_record, calc_trace = calculator(value, scoped, premium)

    per_record = {rid: _cents(amt) for rid, amt in per_record.items()}
    per_product: Dict[str, Decimal] = {}
    for r in scoped:
        per_product[r.product_id] = per_product.get(r.product_id, ZERO) + per_record[r.record_id]

    trace_parts = [calc_trace]
    tiers_status = None
    if tiered:
        basis_label = BASIS_LABELS[rule.tier_basis]
        tier = rule.tiers[selected]
        fell_back = not tier.contains(basis)
        trace_parts.append(
            f"{basis_label} basis {_fmt_basis(rule.tier_basis, basis)} -> tier {tier.range_label}"
            + (" (no tier range holds the basis; using last tier)" if fell_back else "")
        )
        detail = f"Tiered on {basis_label} at {payout_label(rule.payout_type, value)}"
        tiers_status = build_tier_ladder(rule, basis)
    else:
        detail = f"Base rate {payout_label(rule.payout_type, value)}"

    result = RuleResult(
        name=rule.name,
        amount=_cents(amount),
        payout_value=value,
        basis_value=basis,
        apps_count=apps,
        premium_sum=premium,
        detail=detail,
        trace=" | ".join(trace_parts),
        per_product=per_product,
        per_record=per_record,
        record_ids=[r.record_id for r in scoped],
        tiers_status=tiers_status,
        selected_tier=selected,
    )
    logger.debug(f"Rule '{rule.name}': {fmt_money(result.amount)} ({result.trace})")
    return result


def evaluate_rule_blocks(
    plan: ResolvedPlan,
    records: Iterable[SoldRecord],
    default_statuses: Iterable[PolicyStatus],
    metrics: PeriodMetrics,
    warnings: Optional[List[str]] = None,
) -> List[RuleResult]:
    """Evaluate enabled rule blocks in plan order."""
    records = list(records)
    buckets = plan.bucket_index()
    results = []
    for rule in plan.rule_blocks:
        if not rule.enabled:
            continue
        result = evaluate_rule_block(rule, records, default_statuses, metrics, buckets, warnings)
        if result is not None:
            results.append(result)
    return results

# =============================================================================
# 11. BONUS / SCORECARD EVALUATOR
# =============================================================================

@dataclass
class ConditionProgress:
    label: str
    value: Decimal
    target: Decimal
    progress: int           # 0-100
    met: bool
    remaining: Decimal = ZERO   # distance to the target in the operator's direction
    op: Optional[Operator] = Operator.GTE


@dataclass
class BonusCard:
    title: str
    summary: str
    amount: Decimal         # earned and counted in the module total
    potential: Decimal      # what the card pays once unlocked
    detail: str
    achieved: bool
    conditions: List[ConditionProgress] = field(default_factory=list)
    remaining: Optional[str] = None
    tier_name: Optional[str] = None
    selected: bool = False


@dataclass
class BonusResult:
    name: str
    bonus_type: BonusType
    amount: Decimal
    cards: List[BonusCard] = field(default_factory=list)
    satisfied_tiers: List[str] = field(default_factory=list)


OPERATORS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.GTE: operator.ge,
    Operator.GT: operator.gt,
    Operator.LTE: operator.le,
    Operator.LT: operator.lt,
    Operator.EQ: operator.eq,
}


def op_pass(value: Decimal, op: Optional[Operator], target: Decimal) -> bool:
    check = OPERATORS.get(op)
    if check is None:
        return False
    return bool(check(value, target))


def _premium_category_metric(c: Condition, m: PeriodMetrics) -> Optional[Decimal]:
    if c.premium_category is None:
        return None
    return m.category_total(c.premium_category)


def _bucket_metric(c: Condition, m: PeriodMetrics) -> Optional[Decimal]:
    return m.bucket_value(c.bucket_id, c.premium_category)


def _apps_metric(c: Condition, m: PeriodMetrics) -> Optional[Decimal]:
    return Decimal(m.apps_count)


def _activity_metric(c: Condition, m: PeriodMetrics) -> Optional[Decimal]:
    if not c.activity_type_id:
        return None
    return Decimal(m.activity_count(c.activity_type_id))


def _total_premium_metric(c: Condition, m: PeriodMetrics) -> Optional[Decimal]:
    return m.premium_sum


METRIC_VALUES: Dict[MetricSource, Callable[[Condition, PeriodMetrics], Optional[Decimal]]] = {
    MetricSource.PREMIUM_CATEGORY: _premium_category_metric,
    MetricSource.BUCKET: _bucket_metric,
    MetricSource.APPS_COUNT: _apps_metric,
    MetricSource.ACTIVITY: _activity_metric,
    MetricSource.TOTAL_PREMIUM: _total_premium_metric,
}

# Sources measured in dollars; the rest are counts
MONEY_SOURCES = frozenset({MetricSource.PREMIUM_CATEGORY, MetricSource.BUCKET, MetricSource.TOTAL_PREMIUM})


def condition_value(c: Condition, m: PeriodMetrics) -> Optional[Decimal]:
    """Current value of a condition's metric; None for unusable config."""
    getter = METRIC_VALUES.get(c.metric_source)
    if getter is None:
        return None
    return getter(c, m)


def condition_met(c: Condition, m: PeriodMetrics) -> bool:
    value = condition_value(c, m)
    if value is None:
        return False
    return op_pass(value, c.op, c.target)


def condition_label(c: Condition, m: PeriodMetrics) -> str:
    if c.metric_source is MetricSource.BUCKET and c.bucket_id:
        return f"{m.bucket_names.get(c.bucket_id, c.bucket_id)} bucket"
    if c.metric_source in (MetricSource.PREMIUM_CATEGORY, MetricSource.BUCKET):
        return CATEGORY_LABELS.get(c.premium_category, "Total premium across all lines")
    if c.metric_source is MetricSource.TOTAL_PREMIUM:
        return "Total premium"
    if c.metric_source is MetricSource.APPS_COUNT:
        return "Apps"
    if c.metric_source is MetricSource.ACTIVITY:
        return f"Activity {c.activity_type_id}" if c.activity_type_id else "Activity"
    return "Metric"


def _fmt_metric(source: Optional[MetricSource], value: Decimal) -> str:
    return fmt_money(value) if source in MONEY_SOURCES else _fmt_number(value)


def _progress_pct(value: Decimal, target: Decimal, met: bool) -> int:
    if target > 0:
        pct = (Decimal(value) / target * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return max(0, min(100, int(pct)))
    return 100 if met else 0


# Wording for the gap on an unmet condition, by operator
GAP_WORDS: Dict[Operator, str] = {
    Operator.GTE: "left",
    Operator.GT: "left",
    Operator.LTE: "over",
    Operator.LT: "over",
    Operator.EQ: "off",
}


def condition_gap(op: Optional[Operator], value: Decimal, target: Decimal) -> Decimal:
    """How far value sits from target, measured the way op needs it to move."""
    if op in (Operator.GTE, Operator.GT):
        return max(ZERO, target - value)
    if op in (Operator.LTE, Operator.LT):
        return max(ZERO, value - target)
    if op is Operator.EQ:
        return abs(target - value)
    return ZERO


def condition_progress(c: Condition, m: PeriodMetrics) -> ConditionProgress:
    value = condition_value(c, m)
    met = value is not None and op_pass(value, c.op, c.target)
    value = value if value is not None else ZERO
    return ConditionProgress(
        label=condition_label(c, m),
        value=value,
        target=c.target,
        progress=_progress_pct(value, c.target, met),
        met=met,
        remaining=ZERO if met else condition_gap(c.op, value, c.target),
        op=c.op,
    )


def _gap_hint(p: ConditionProgress, source: Optional[MetricSource]) -> Optional[str]:
    word = GAP_WORDS.get(p.op)
    if p.met or word is None:
        return None
    if p.remaining == 0:
        # LT/GT sitting exactly on the target
        return f"{p.label}: must move past {_fmt_metric(source, p.target)}"
    return f"{p.label}: {_fmt_metric(source, p.remaining)} {word}"


def tier_satisfied(tier: ScorecardTier, m: PeriodMetrics) -> bool:
    """
    AND/OR over the tier's conditions.

    A tier without conditions never pays, even when it requires all
    conditions: an empty tier is treated as unfinished configuration rather
    than as vacuously satisfied.
    """
    if not tier.conditions:
        return False
    results = [condition_met(c, m) for c in tier.conditions]
    return all(results) if tier.requires_all else any(results)


def reward_value(reward: Reward, m: PeriodMetrics) -> Decimal:
    if reward.reward_type is RewardType.ADD_FLAT_DOLLARS:
        return reward.dollar_value
    if reward.reward_type is RewardType.ADD_PERCENT_OF_BUCKET:
        return reward.percent_value * m.bucket_value(reward.bucket_id, reward.premium_category)
    return ZERO


def tier_reward(tier: ScorecardTier, m: PeriodMetrics) -> Decimal:
    return sum((reward_value(r, m) for r in tier.rewards), ZERO)


def evaluate_scorecard(module: BonusModule, m: PeriodMetrics, warnings: Optional[List[str]] = None) -> BonusResult:
    """
    Score a tiered scorecard.

    highest_tier_wins selects the last satisfied tier, otherwise the first.
    stack_tiers pays every satisfied tier instead of only the selected one.
    One card is emitted per tier, achieved or not.
    """
    title = module.name or "Scorecard"
    tiers = sorted(module.tiers, key=lambda t: t.order_index)
    if not tiers:
        message = f'Scorecard "{title}" has no tiers.'
        logger.warning(message)
        if warnings is not None:
            warnings.append(message)
        return BonusResult(name=title, bonus_type=BonusType.SCORECARD_TIER, amount=ZERO)

    satisfied = [i for i, tier in enumerate(tiers) if tier_satisfied(tier, m)]
    selected = None
    paying: List[int] = []
    if satisfied:
        selected = satisfied[-1] if module.highest_tier_wins else satisfied[0]
        paying = satisfied if module.stack_tiers else [selected]

    amount = _cents(sum((tier_reward(tiers[i], m) for i in paying), ZERO))

    cards = []
    for i, tier in enumerate(tiers):
        achieved = i in satisfied
        potential = _cents(tier_reward(tier, m))
        progress = [condition_progress(c, m) for c in tier.conditions]
        sources = [c.metric_source for c in tier.conditions]

        summary = " • ".join(
            f"{p.label}: {_fmt_metric(src, p.value)} / {_fmt_metric(src, p.target)} ({p.progress}%)"
            for p, src in zip(progress, sources)
        ) or "No conditions recorded"
        hints = (_gap_hint(p, src) for p, src in zip(progress, sources))
        remaining = " • ".join(h for h in hints if h) or None

        if achieved:
            detail = f'Achieved tier "{tier.name}".'
        elif tier.requires_all:
            detail = f'Need to meet all conditions for "{tier.name}".'
        else:
            detail = f'Need to meet any condition for "{tier.name}".'

        cards.append(BonusCard(
            title=f"{title} - {tier.name}",
            summary=summary,
            amount=potential if i in paying else ZERO,
            potential=potential,
            detail=detail,
            achieved=achieved,
            conditions=progress,
            remaining=remaining,
            tier_name=tier.name,
            selected=(i == selected),
        ))

    return BonusResult(
        name=title,
        bonus_type=BonusType.SCORECARD_TIER,
        amount=amount,
        cards=cards,
        satisfied_tiers=[tiers[i].name for i in satisfied],
    )


def _requirement_progress(
    requirements: List[ActivityRequirement],
    by_type: Dict[str, int],
    by_name: Dict[str, int],
) -> List[ConditionProgress]:
    rows = []
    for req in requirements:
        if req.activity_type_id:
            value = by_type.get(req.activity_type_id, 0)
        elif req.activity_name:
            value = by_name.get(req.activity_name, 0)
        else:
            value = 0
        met = value >= req.minimum
        rows.append(ConditionProgress(
            label=req.label,
            value=Decimal(value),
            target=req.minimum,
            progress=_progress_pct(Decimal(value), req.minimum, met),
            met=met,
            remaining=max(ZERO, req.minimum - value),
        ))
    return rows


@dataclass
class _GroupOutcome:
    conditions: List[ConditionProgress]
    achieved: bool
    met_count: int
    total: Decimal
    remaining: Decimal

    def closeness(self) -> Tuple[int, Decimal, Decimal]:
        return self.met_count, -self.remaining, self.total


def _group_outcome(conditions: List[ConditionProgress], requires_all: bool) -> _GroupOutcome:
    remaining = [c.remaining for c in conditions]
    if requires_all:
        achieved = all(c.met for c in conditions)
        still_needed = max(remaining) if remaining else ZERO
    else:
        achieved = any(c.met for c in conditions)
        still_needed = min(remaining) if remaining else ZERO
    return _GroupOutcome(
        conditions=conditions,
        achieved=achieved,
        met_count=sum(1 for c in conditions if c.met),
        total=sum((c.value for c in conditions), ZERO),
        remaining=still_needed,
    )


def _evaluate_grouped_activity(module: BonusModule, cfg: ActivityBonusConfig, m: PeriodMetrics) -> BonusResult:
    """
    Activity bonus with several requirements.

    MONTH checks period totals. DAY checks each day on its own: the best
    qualifying day (largest combined count) pays, and the closest day is shown
    as progress when none qualifies.
    """
    reqs = cfg.requirements
    if cfg.timeframe is Timeframe.DAY:
        winning: Optional[_GroupOutcome] = None
        shown = _group_outcome(_requirement_progress(reqs, {}, {}), cfg.requires_all)
        days = sorted(set(m.activity_by_day_type) | set(m.activity_by_day_name))
        for day in days:
            outcome = _group_outcome(
                _requirement_progress(reqs, m.activity_by_day_type.get(day, {}), m.activity_by_day_name.get(day, {})),
                cfg.requires_all,
            )
            if outcome.achieved and (winning is None or outcome.total > winning.total):
                winning = outcome
            if outcome.closeness() > shown.closeness():
                shown = outcome
    else:
        shown = _group_outcome(_requirement_progress(reqs, m.activity_by_type, m.activity_by_name), cfg.requires_all)
        winning = shown if shown.achieved else None

    achieved = winning is not None
    display = winning if achieved else shown
    amount = ZERO
    if achieved:
        amount = cfg.payout_value * winning.total if cfg.per_unit else cfg.payout_value
    amount = _cents(amount)
    potential = amount if achieved or cfg.per_unit else _cents(cfg.payout_value)

    card = BonusCard(
        title=module.name or "Activity bonus",
        summary=(
            f"Grouped activity bonus - {cfg.timeframe.value} - "
            f"met {display.met_count}/{len(reqs)} requirements"
        ),
        amount=amount,
        potential=potential,
        detail="Achieved" if achieved else "Not yet achieved",
        achieved=achieved,
        conditions=display.conditions,
        remaining=None if achieved else f"{_fmt_number(display.remaining)} more to unlock",
        selected=achieved,
    )
    return BonusResult(name=card.title, bonus_type=BonusType.ACTIVITY_BONUS, amount=amount, cards=[card])


def evaluate_activity_bonus(module: BonusModule, m: PeriodMetrics, warnings: Optional[List[str]] = None) -> BonusResult:
    """Threshold bonus on one activity type; always returns a progress card."""
    title = module.name or "Activity bonus"
    cfg = module.activity
    if cfg is None:
        message = f'Activity bonus "{title}" has no configuration.'
        logger.warning(message)
        if warnings is not None:
            warnings.append(message)
        return BonusResult(name=title, bonus_type=BonusType.ACTIVITY_BONUS, amount=ZERO)

    if cfg.requirements:
        return _evaluate_grouped_activity(module, cfg, m)

    count = m.activity_count(cfg.activity_type_id, cfg.activity_type_name)
    needed = cfg.threshold
    achieved = count >= needed
    amount = ZERO
    if achieved:
        amount = cfg.payout_value * count if cfg.per_unit else cfg.payout_value
    amount = _cents(amount)
    potential = _cents(cfg.payout_value * max(Decimal(count), needed)) if cfg.per_unit else _cents(cfg.payout_value)
    label = cfg.activity_type_name or cfg.activity_type_id or "Activity"

    card = BonusCard(
        title=title,
        summary=f"Activity: {label} - {count}/{_fmt_number(needed)}",
        amount=amount,
        potential=potential,
        detail="Achieved" if achieved else "Not yet achieved",
        achieved=achieved,
        conditions=[ConditionProgress(
            label=label,
            value=Decimal(count),
            target=needed,
            progress=_progress_pct(Decimal(count), needed, achieved),
            met=achieved,
            remaining=max(ZERO, needed - count),
        )],
        remaining=None if achieved else f"{_fmt_number(max(ZERO, needed - count))} more to unlock",
        selected=achieved,
    )
    return BonusResult(name=title, bonus_type=BonusType.ACTIVITY_BONUS, amount=amount, cards=[card])


BONUS_EVALUATORS: Dict[BonusType, Callable[[BonusModule, PeriodMetrics, Optional[List[str]]], BonusResult]] = {
    BonusType.ACTIVITY_BONUS: evaluate_activity_bonus,
    BonusType.SCORECARD_TIER: evaluate_scorecard,
}


def evaluate_bonuses(
    modules: List[BonusModule],
    metrics: PeriodMetrics,
    warnings: Optional[List[str]] = None,
) -> List[BonusResult]:
    results = []
    for module in modules:
        if not module.enabled:
            continue
        evaluator = BONUS_EVALUATORS.get(module.bonus_type)
        if evaluator is None:
            message = f'Bonus module "{module.name}" skipped: unknown bonus type.'
            logger.warning(message)
            if warnings is not None:
                warnings.append(message)
            continue
        results.append(evaluator(module, metrics, warnings))
    return results

# =============================================================================
# 12. PAYOUT AGGREGATOR
# =============================================================================

@dataclass
class ProductSummary:
    product_id: str
    product_name: str
    premium_category: Optional[PremiumCategory]
    apps: int
    premium: Decimal
    earnings: Decimal = ZERO


RULE_COLUMNS = ["rule", "amount", "apps", "premium", "basis", "payout_value", "detail", "trace"]
BONUS_COLUMNS = ["module", "card", "achieved", "selected", "amount", "potential", "detail", "remaining"]
PRODUCT_COLUMNS = ["product_id", "product_name", "premium_category", "apps", "premium", "earnings"]


@dataclass
class PayoutBreakdown:
    period: str
    person_id: Optional[str]
    plan_id: Optional[str]
    plan_name: Optional[str]
    status_filter: List[PolicyStatus]
    gate_status: GateStatus
    rule_results: List[RuleResult]
    bonus_results: List[BonusResult]
    metrics: PeriodMetrics
    potential_commission: Decimal
    potential_bonus: Decimal
    commission_total: Decimal
    bonus_total: Decimal
    total_payout: Decimal
    product_earnings: Dict[str, Decimal] = field(default_factory=dict)
    product_summary: List[ProductSummary] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.gate_status.blocked

    @property
    def plan_assigned(self) -> bool:
        return self.plan_id is not None

    @property
    def bonus_cards(self) -> List[BonusCard]:
        return [card for result in self.bonus_results for card in result.cards]

    # -----------------------------------------------------------------
    # TABLES
    # -----------------------------------------------------------------
    def rule_frame(self) -> pd.DataFrame:
        rows = [{
            "rule": r.name,
            "amount": float(r.amount),
            "apps": r.apps_count,
            "premium": float(r.premium_sum),
            "basis": float(r.basis_value),
            "payout_value": float(r.payout_value),
            "detail": r.detail,
            "trace": r.trace,
        } for r in self.rule_results]
        return pd.DataFrame(rows, columns=RULE_COLUMNS)

    def bonus_frame(self) -> pd.DataFrame:
        rows = [{
            "module": result.name,
            "card": card.title,
            "achieved": card.achieved,
            "selected": card.selected,
            "amount": float(card.amount),
            "potential": float(card.potential),
            "detail": card.detail,
            "remaining": card.remaining or "",
        } for result in self.bonus_results for card in result.cards]
        return pd.DataFrame(rows, columns=BONUS_COLUMNS)

    def product_frame(self) -> pd.DataFrame:
        rows = [{
            "product_id": p.product_id,
            "product_name": p.product_name,
            "premium_category": p.premium_category.value if p.premium_category else "",
            "apps": p.apps,
            "premium": float(p.premium),
            "earnings": float(p.earnings),
        } for p in self.product_summary]
        return pd.DataFrame(rows, columns=PRODUCT_COLUMNS)

    # -----------------------------------------------------------------
    # EXPORTS
    # -----------------------------------------------------------------
    def export(self, output_prefix: str) -> List[str]:
        """Write rule, bonus and product tables to CSV; returns the paths."""
        paths = []
        for name, frame in (
            ("rules", self.rule_frame()),
            ("bonuses", self.bonus_frame()),
            ("products", self.product_frame()),
        ):
            path = f"{output_prefix}_{name}_{self.period}.csv"
            frame.to_csv(path, index=False)
            paths.append(path)
        logger.info(f"Payout breakdown for {self.person_id or 'person'} exported to {len(paths)} files")
        return paths

    def print_summary(self) -> None:
        """Print the paycheck breakdown to console."""
        print("\n" + "=" * 80)
        print(f"  PAYCHECK PREVIEW - {self.person_id or 'Unknown'} - {self.period}")
        print("=" * 80)
        print(f"  Plan:            {self.plan_name or 'No plan assigned'}")
        print(f"  Statuses:        {', '.join(s.value for s in self.status_filter)}")
        print(f"  Apps:            {self.metrics.apps_count}")
        print(f"  Premium:         {fmt_money(self.metrics.premium_sum)}")
        print(f"  Commission:      {fmt_money(self.commission_total)}")
        print(f"  Bonus:           {fmt_money(self.bonus_total)}")
        print(f"  TOTAL PAYOUT:    {fmt_money(self.total_payout)}")
        print("=" * 80)

        if self.blocked:
            print(f"\n  Payouts blocked until gates are met "
                  f"(would be {fmt_money(self.potential_commission + self.potential_bonus)}):")
            for reason in self.gate_status.reasons:
                print(f"   {reason}")
        elif self.gate_status.traces:
            print("\n  Gate checks:")
            for trace in self.gate_status.traces:
                print(f"   {trace}")

        if self.rule_results:
            print()
            print(self.rule_frame()[["rule", "amount", "apps", "premium", "detail"]].to_string(index=False))

        for card in self.bonus_cards:
            state = "ACHIEVED" if card.achieved else "open"
            print(f"\n  [{state}] {card.title}: {fmt_money(card.amount)} of {fmt_money(card.potential)}")
            print(f"   {card.summary}")
            if card.remaining:
                print(f"   {card.remaining}")

        if self.warnings:
            print(f"\n  {len(self.warnings)} warnings:")
            for w in self.warnings[:10]:
                print(f"   {w}")
            if len(self.warnings) > 10:
                print(f"   ... and {len(self.warnings) - 10} more")


def summarize_products(records: Iterable[SoldRecord], product_earnings: Dict[str, Decimal]) -> List[ProductSummary]:
    grouped: Dict[str, ProductSummary] = {}
    for r in records:
        entry = grouped.get(r.product_id)
        if entry is None:
            entry = ProductSummary(
                product_id=r.product_id,
                product_name=r.product_label,
                premium_category=r.premium_category,
                apps=0,
                premium=ZERO,
                earnings=product_earnings.get(r.product_id, ZERO),
            )
            grouped[r.product_id] = entry
        entry.apps += 1
        entry.premium += r.premium
    return list(grouped.values())


def aggregate_payout(
    period: str,
    person_id: Optional[str],
    plan: Optional[ResolvedPlan],
    statuses: Iterable[PolicyStatus],
    gate_status: GateStatus,
    rule_results: List[RuleResult],
    bonus_results: List[BonusResult],
    eligible_records: List[SoldRecord],
    metrics: PeriodMetrics,
    warnings: List[str],
) -> PayoutBreakdown:
    """
    Fold gate, rule and bonus results into one breakdown.

    When gates block, applied totals and per-product earnings are zero while
    the rule and bonus detail (and the potential totals) stay populated.
    """
    potential_commission = sum((r.amount for r in rule_results), ZERO)
    potential_bonus = sum((b.amount for b in bonus_results), ZERO)

    if gate_status.blocked:
        commission_total = ZERO
        bonus_total = ZERO
        product_earnings: Dict[str, Decimal] = {}
    else:
        commission_total = potential_commission
        bonus_total = potential_bonus
        product_earnings = {}
        for result in rule_results:
            for product_id, amt in result.per_product.items():
                product_earnings[product_id] = product_earnings.get(product_id, ZERO) + amt

    breakdown = PayoutBreakdown(
        period=period,
        person_id=person_id,
        plan_id=plan.plan_id if plan else None,
        plan_name=plan.plan_name if plan else None,
        status_filter=sorted(statuses, key=lambda s: s.value),
        gate_status=gate_status,
        rule_results=rule_results,
        bonus_results=bonus_results,
        metrics=metrics,
        potential_commission=potential_commission,
        potential_bonus=potential_bonus,
        commission_total=commission_total,
        bonus_total=bonus_total,
        total_payout=commission_total + bonus_total,
        product_earnings=product_earnings,
        product_summary=summarize_products(eligible_records, product_earnings),
        warnings=list(warnings) + list(gate_status.warnings),
    )
    logger.info(
        f"Payout for {person_id or 'person'} in {period}: commission {fmt_money(commission_total)}, "
        f"bonus {fmt_money(bonus_total)}, total {fmt_money(breakdown.total_payout)}"
        + (" (blocked by gates)" if gate_status.blocked else "")
    )
    return breakdown

# =============================================================================
# 13. EVALUATION ENTRY POINT
# =============================================================================

def evaluate_payout(
    plan: Optional[ResolvedPlan],
    records: Iterable[SoldRecord],
    activities: Iterable[ActivityCount],
    period: str,
    status_filter: Optional[Iterable[PolicyStatus]] = None,
    person_id: Optional[str] = None,
) -> PayoutBreakdown:
    """
    Full recompute of one person's payout for one period.

    Validates caller input, drops rows outside the period (or sold by someone
    else), then runs gates, rule blocks and bonuses. Nothing passed in is
    modified, so repeated calls with the same arguments return equal results.

    Args:
        plan:          Resolved plan, or None when nothing is assigned
        records:       Sold products for the person
        activities:    Activity counts for the person
        period:        Period key "YYYY-MM"
        status_filter: Policy statuses counted; defaults to ISSUED + PAID
        person_id:     Person being paid; used to drop other people's rows

    Raises:
        InvalidInputError: malformed period key, negative thresholds,
                           negative premium or activity counts
    """
    start, end = period_bounds(period)
    statuses = frozenset(status_filter) if status_filter is not None else DEFAULT_STATUS_FILTER
    if not statuses:
        raise InvalidInputError("Status filter must include at least one policy status")
    records = list(records)
    activities = list(activities)
    validate_records(records)
    validate_activities(activities)
    if plan is not None:
        validate_plan(plan)

    period_records = [
        r for r in records
        if start <= r.sale_day <= end and (not person_id or not r.seller_id or r.seller_id == person_id)
    ]
    period_activity = [
        a for a in activities
        if (not person_id or not a.person_id or a.person_id == person_id)
        and (a.activity_date is None or start <= _as_date(a.activity_date) <= end)
    ]
    if len(period_records) < len(records):
        logger.info(f"Ignoring {len(records) - len(period_records)} sold records outside {period} or another seller")

    warnings: List[str] = []
    eligible = filter_by_status(period_records, statuses)
    metrics = aggregate_metrics(eligible, period_activity, plan.buckets if plan else ())

    if plan is None:
        warnings.append("No plan assigned")
        gate_status = GateStatus()
        rule_results: List[RuleResult] = []
        bonus_results: List[BonusResult] = []
    else:
        gate_status = evaluate_gates(plan.gates, period_records, statuses)
        rule_results = evaluate_rule_blocks(plan, period_records, statuses, metrics, warnings)
        bonus_results = evaluate_bonuses(plan.bonus_modules, metrics, warnings)

    return aggregate_payout(
        period, person_id, plan, statuses, gate_status,
        rule_results, bonus_results, eligible, metrics, warnings,
    )


def _as_date(value: date) -> date:
    return value.date() if isinstance(value, datetime) else value

# =============================================================================
# 14. THE ENGINE
# =============================================================================

class CompensationEngine:
    def __init__(self, include_written: bool = False):
        self.include_written = include_written
        self.people: Dict[str, PersonKeys] = {}
        self.assignments: List[PlanAssignment] = []

    # -----------------------------------------------------------------
    # ROSTER & ASSIGNMENTS
    # -----------------------------------------------------------------
    def load_people_roster(self, filepath: str) -> None:
        """
        Load person-to-hierarchy mapping from CSV.
        Expected columns: person_id, role_id, team_id, agency_id
        """
        df = pd.read_csv(filepath, dtype=str).fillna("")
        for _, row in df.iterrows():
            person = PersonKeys(
                person_id=str(row["person_id"]).strip(),
                role_id=str(row.get("role_id", "")).strip() or None,
                team_id=str(row.get("team_id", "")).strip() or None,
                agency_id=str(row.get("agency_id", "")).strip() or None,
            )
            self.people[person.person_id] = person
        logger.info(f"Loaded {len(self.people)} people from roster")

    def add_person(self, person: PersonKeys) -> None:
        self.people[person.person_id] = person

    def add_assignment(self, assignment: PlanAssignment) -> None:
        self.assignments.append(assignment)

    def load_assignments(self, filepath: str) -> None:
        """Load plan assignments (each carrying its plan) from a JSON list."""
        with open(filepath, "r") as f:
            data = json.load(f)
        loaded = assignments_from_dicts(data)
        self.assignments.extend(loaded)
        logger.info(f"Loaded {len(loaded)} plan assignments from {filepath}")

    def _person(self, person: Union[PersonKeys, str]) -> PersonKeys:
        if isinstance(person, PersonKeys):
            return person
        found = self.people.get(person)
        if found is None:
            raise InvalidInputError(f"Unknown person '{person}'")
        return found

    # -----------------------------------------------------------------
    # EVALUATION
    # -----------------------------------------------------------------
    def resolve_plan(self, person: Union[PersonKeys, str], period: str) -> Optional[ResolvedPlan]:
        return resolve_plan(self._person(person), period, self.assignments)

    def run_period(
        self,
        person: Union[PersonKeys, str],
        period: str,
        records: Iterable[SoldRecord],
        activities: Iterable[ActivityCount] = (),
    ) -> PayoutBreakdown:
        """Resolve the person's plan for the period and evaluate it."""
        keys = self._person(person)
        plan = resolve_plan(keys, period, self.assignments)
        return evaluate_payout(
            plan,
            records,
            activities,
            period,
            status_filter=status_filter_for(self.include_written),
            person_id=keys.person_id,
        )

# =============================================================================
# 15. INGEST: CSV EXPORTS & PLAN DEFINITIONS
# =============================================================================

DEFAULT_RECORD_COLUMNS = {
    "record_id":        "record_id",
    "product_id":       "product_id",
    "product_name":     "product_name",
    "lob_id":           "lob_id",
    "lob_name":         "lob_name",
    "premium_category": "premium_category",
    "product_type":     "product_type",
    "premium":          "premium",
    "date_sold":        "date_sold",
    "status":           "status",
    "seller_id":        "seller_id",
}

DEFAULT_ACTIVITY_COLUMNS = {
    "activity_type_id": "activity_type_id",
    "activity_name":    "activity_name",
    "count":            "count",
    "person_id":        "person_id",
    "activity_date":    "activity_date",
}


def _cell(row: pd.Series, column: str) -> str:
    value = row.get(column, "")
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value).strip()


def load_sold_records(filepath: str, col_map: Optional[Dict[str, str]] = None) -> List[SoldRecord]:
    """
    Load sold-product rows from a CSV export.

    Default expected columns (override with col_map): record_id, product_id,
    product_name, lob_id, lob_name, premium_category, product_type, premium,
    date_sold, status, seller_id. Rows that cannot be parsed are skipped.
    """
    cmap = {**DEFAULT_RECORD_COLUMNS, **(col_map or {})}
    df = pd.read_csv(filepath, dtype=str)
    records: List[SoldRecord] = []
    skipped = 0

    for idx, row in df.iterrows():
        try:
            premium = _to_decimal(_cell(row, cmap["premium"]))
            if premium is None:
                raise ValueError(f"unreadable premium '{_cell(row, cmap['premium'])}'")
            status = _parse_enum(PolicyStatus, _cell(row, cmap["status"]))
            if status is None:
                raise ValueError(f"unknown status '{_cell(row, cmap['status'])}'")
            product_id = _cell(row, cmap["product_id"]) or _cell(row, cmap["product_name"])
            if not product_id:
                raise ValueError("missing product")

            records.append(SoldRecord(
                record_id=_cell(row, cmap["record_id"]) or f"SP-{idx}",
                product_id=product_id,
                product_name=_cell(row, cmap["product_name"]),
                lob_id=_cell(row, cmap["lob_id"]) or _cell(row, cmap["lob_name"]),
                lob_name=_cell(row, cmap["lob_name"]),
                premium_category=_parse_enum(PremiumCategory, _cell(row, cmap["premium_category"])),
                product_type=_parse_enum(ProductType, _cell(row, cmap["product_type"])),
                premium=premium,
                date_sold=pd.to_datetime(_cell(row, cmap["date_sold"])).date(),
                status=status,
                seller_id=_cell(row, cmap["seller_id"]),
            ))
        except Exception as e:
            skipped += 1
            logger.error(f"Row {idx} skipped: {e}")

    logger.info(f"Loaded {len(records)} sold records, skipped {skipped}")
    return records


def load_activity_counts(filepath: str, col_map: Optional[Dict[str, str]] = None) -> List[ActivityCount]:
    """
    Load activity rows from CSV and total them per person, type and day.
    Expected columns: activity_type_id, activity_name, count, person_id,
    activity_date (optional).
    """
    cmap = {**DEFAULT_ACTIVITY_COLUMNS, **(col_map or {})}
    df = pd.read_csv(filepath, dtype=str)
    frame = pd.DataFrame({
        key: (df[col] if col in df.columns else "") for key, col in cmap.items()
    }).fillna("")
    frame["count"] = pd.to_numeric(frame["count"], errors="coerce")
    bad = frame["count"].isna()
    if bad.any():
        logger.error(f"Skipped {int(bad.sum())} activity rows with unreadable counts")
    frame = frame[~bad].copy()
    frame["count"] = frame["count"].astype(int)
    frame["activity_date"] = frame["activity_date"].astype(str).str.slice(0, 10)

    grouped = (
        frame.groupby(["person_id", "activity_type_id", "activity_name", "activity_date"], sort=True)["count"]
        .sum()
        .reset_index()
    )
    counts = [
        ActivityCount(
            activity_type_id=row["activity_type_id"] or None,
            count=int(row["count"]),
            person_id=row["person_id"],
            activity_name=row["activity_name"],
            activity_date=pd.to_datetime(row["activity_date"]).date() if row["activity_date"] else None,
        )
        for _, row in grouped.iterrows()
    ]
    logger.info(f"Loaded {len(counts)} activity totals from {filepath}")
    return counts


def _enum_set(enum_cls, values: Optional[Iterable[Any]]) -> frozenset:
    parsed = (_parse_enum(enum_cls, v) for v in (values or []))
    return frozenset(v for v in parsed if v is not None)


def _str_set(*groups: Optional[Iterable[Any]]) -> frozenset:
    return frozenset(str(v) for group in groups for v in (group or []) if v not in (None, ""))


def _qualifier_category(data: Dict[str, Any]) -> Optional[PremiumCategory]:
    raw = data.get("premiumCategory") or (data.get("filters") or {}).get("premiumCategory")
    return _parse_enum(PremiumCategory, raw)


def _to_int(value: Any, default: int) -> int:
    parsed = _to_decimal(value)
    return int(parsed) if parsed is not None else default


def _percent_to_fraction(value: Decimal) -> Decimal:
    """Plan builder stores percents as whole numbers (10 = 10%)."""
    return value / 100


def tier_row_from_dict(data: Dict[str, Any], percent: bool = False) -> TierRow:
    payout = _to_decimal(data.get("payoutValue"), ZERO)
    return TierRow(
        min_value=_to_decimal(data.get("minValue"), ZERO),
        max_value=_to_decimal(data.get("maxValue")),
        payout_value=_percent_to_fraction(payout) if percent else payout,
    )


def rule_block_from_dict(data: Dict[str, Any], order_index: int = 0) -> RuleBlock:
    """
    Build a RuleBlock from an authored config mapping (camelCase keys as saved
    by the plan builder).

    The builder saves PERCENT_OF_PREMIUM rates as whole percents; they are
    converted to fractions here, so basePayoutValue 10 becomes 0.10.
    """
    filters = data.get("applyFilters") or {}
    override = _enum_set(PolicyStatus, data.get("statusEligibilityOverride"))
    payout_type = _parse_enum(PayoutType, data.get("payoutType"))
    percent = payout_type is PayoutType.PERCENT_OF_PREMIUM
    base_value = _to_decimal(data.get("basePayoutValue"), ZERO)
    tiers = sorted(
        (tier_row_from_dict(t, percent) for t in data.get("tiers") or []),
        key=lambda t: t.min_value,
    )
    return RuleBlock(
        name=str(data.get("name") or "Rule"),
        apply_scope=_parse_enum(ApplyScope, data.get("applyScope")),
        payout_type=payout_type,
        base_payout_value=_percent_to_fraction(base_value) if percent else base_value,
        filters=ScopeFilters(
            product_ids=_str_set(filters.get("productIds"), filters.get("productNames")),
            lob_ids=_str_set(filters.get("lobIds"), filters.get("lobNames")),
            product_types=_enum_set(ProductType, filters.get("productTypes")),
            premium_categories=_enum_set(PremiumCategory, filters.get("premiumCategories")),
        ),
        enabled=bool(data.get("enabled", True)),
        status_override=override or None,
        tier_mode=_parse_enum(TierMode, data.get("tierMode") or TierMode.NONE),
        tier_basis=_parse_enum(TierBasis, data.get("tierBasis") or TierBasis.APP_COUNT),
        min_threshold=_to_decimal(data.get("minThreshold")),
        tiers=tiers,
        bucket_id=data.get("bucketId") or None,
        bucket_category=_qualifier_category(data),
        order_index=_to_int(data.get("orderIndex"), order_index),
    )


def gate_from_dict(data: Dict[str, Any]) -> Gate:
    return Gate(
        name=str(data.get("name") or "Gate"),
        gate_type=_parse_enum(GateType, data.get("gateType")),
        threshold=_to_decimal(data.get("thresholdValue"), ZERO),
        enabled=bool(data.get("enabled", True)),
    )


def _activity_config_from_dict(cfg: Dict[str, Any]) -> ActivityBonusConfig:
    requirements = [
        ActivityRequirement(
            activity_type_id=req.get("activityTypeId") or None,
            activity_name=str(req.get("activityName") or ""),
            minimum=_to_decimal(req.get("min"), ZERO),
        )
        for req in cfg.get("requirements") or []
    ]
    per_unit = bool(cfg.get("perUnit")) or str(cfg.get("payoutType", "")).upper() == "PER_UNIT"
    return ActivityBonusConfig(
        activity_type_id=cfg.get("activityTypeId") or None,
        activity_type_name=str(cfg.get("activityTypeName") or ""),
        threshold=_to_decimal(cfg.get("threshold"), ZERO),
        payout_value=_to_decimal(cfg.get("payoutValue"), ZERO),
        per_unit=per_unit,
        requirements=requirements,
        timeframe=_parse_enum(Timeframe, cfg.get("timeframe")) or Timeframe.MONTH,
        requires_all=bool(cfg.get("requiresAll", True)),
    )


def _condition_from_dict(data: Dict[str, Any]) -> Condition:
    return Condition(
        metric_source=_parse_enum(MetricSource, data.get("metricSource")),
        op=_parse_enum(Operator, data.get("operator")),
        target=_to_decimal(data.get("value"), ZERO),
        premium_category=_qualifier_category(data),
        bucket_id=data.get("bucketId") or None,
        activity_type_id=data.get("activityTypeId") or None,
    )


def _reward_from_dict(data: Dict[str, Any]) -> Reward:
    return Reward(
        reward_type=_parse_enum(RewardType, data.get("rewardType")),
        dollar_value=_to_decimal(data.get("dollarValue"), ZERO),
        percent_value=_percent_to_fraction(_to_decimal(data.get("percentValue"), ZERO)),
        premium_category=_qualifier_category(data),
        bucket_id=data.get("bucketId") or None,
    )


def bonus_module_from_dict(data: Dict[str, Any]) -> BonusModule:
    bonus_type = _parse_enum(BonusType, data.get("bonusType"))
    tiers = [
        ScorecardTier(
            name=str(t.get("name") or f"Tier {i + 1}"),
            order_index=_to_int(t.get("orderIndex"), i),
            requires_all=bool(t.get("requiresAllConditions", True)),
            conditions=[_condition_from_dict(c) for c in t.get("conditions") or []],
            rewards=[_reward_from_dict(r) for r in t.get("rewards") or []],
        )
        for i, t in enumerate(data.get("scorecardTiers") or [])
    ]
    activity = None
    if bonus_type is BonusType.ACTIVITY_BONUS and data.get("config") is not None:
        activity = _activity_config_from_dict(data["config"])
    return BonusModule(
        name=str(data.get("name") or ""),
        bonus_type=bonus_type,
        enabled=bool(data.get("enabled", True)),
        activity=activity,
        highest_tier_wins=bool(data.get("highestTierWins", False)),
        stack_tiers=bool(data.get("stackTiers", False)),
        tiers=tiers,
    )


def bucket_from_dict(data: Dict[str, Any]) -> Bucket:
    return Bucket(
        bucket_id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        includes_products=_str_set(data.get("includesProducts")),
        includes_lobs=_str_set(data.get("includesLobs")),
    )


def _version_parts(data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "rule_blocks": [rule_block_from_dict(r, i) for i, r in enumerate(data.get("ruleBlocks") or [])],
        "gates": [gate_from_dict(g) for g in data.get("gates") or []],
        "bonus_modules": [bonus_module_from_dict(b) for b in data.get("bonusModules") or []],
        "buckets": [bucket_from_dict(b) for b in data.get("buckets") or []],
    }


def plan_from_dict(data: Dict[str, Any]) -> ResolvedPlan:
    """Build a ResolvedPlan straight from a plan-version mapping."""
    plan = ResolvedPlan(
        plan_id=str(data.get("planId") or data.get("id") or "PLAN"),
        version_id=str(data.get("versionId") or "current"),
        plan_name=str(data.get("name") or ""),
        **_version_parts(data),
    )
    plan.rule_blocks.sort(key=lambda r: r.order_index)
    return plan


def load_plan_file(filepath: str) -> ResolvedPlan:
    with open(filepath, "r") as f:
        data = json.load(f)
    plan = plan_from_dict(data)
    logger.info(
        f"Loaded plan '{plan.plan_name}' with {len(plan.rule_blocks)} rule blocks, "
        f"{len(plan.gates)} gates, {len(plan.bonus_modules)} bonus modules"
    )
    return plan


def comp_plan_from_dict(data: Dict[str, Any]) -> CompPlan:
    versions = [
        PlanVersion(
            version_id=str(v.get("id") or f"v{i + 1}"),
            is_current=bool(v.get("isCurrent", False)),
            **_version_parts(v),
        )
        for i, v in enumerate(data.get("versions") or [])
    ]
    return CompPlan(
        plan_id=str(data.get("id") or ""),
        name=str(data.get("name") or ""),
        status=_parse_enum(PlanStatus, data.get("status")),
        active=bool(data.get("active", True)),
        versions=versions,
    )


def assignments_from_dicts(items: Iterable[Dict[str, Any]]) -> List[PlanAssignment]:
    return [
        PlanAssignment(
            scope_type=_parse_enum(AssignmentScope, item.get("scopeType")),
            scope_id=item.get("scopeId") or None,
            plan=comp_plan_from_dict(item.get("plan") or {}),
            active=bool(item.get("active", True)),
            effective_start_month=item.get("effectiveStartMonth") or None,
        )
        for item in items
    ]

# =============================================================================
# 16. COMPLETE PAYCHECK WORKFLOW
# =============================================================================

def run_paycheck(
    records_file: str,
    plan_file: str,
    period: str,
    person_id: str,
    activity_file: Optional[str] = None,
    include_written: bool = False,
    output_prefix: str = "paycheck",
    col_map: Optional[Dict[str, str]] = None,
) -> PayoutBreakdown:
    """
    End-to-end paycheck preview for one person.

    Args:
        records_file:    Path to sold-products CSV export
        plan_file:       Path to the person's plan definition (JSON)
        period:          Period key "YYYY-MM"
        person_id:       Person being paid
        activity_file:   Path to activity CSV (optional)
        include_written: Count WRITTEN business as well as ISSUED/PAID
        output_prefix:   Prefix for output files
        col_map:         Column name mapping for the sold-products CSV

    Returns:
        The payout breakdown
    """
    plan = load_plan_file(plan_file)
    records = load_sold_records(records_file, col_map=col_map)
    activities = load_activity_counts(activity_file) if activity_file else []

    breakdown = evaluate_payout(
        plan,
        records,
        activities,
        period,
        status_filter=status_filter_for(include_written),
        person_id=person_id,
    )
    breakdown.export(output_prefix)
    breakdown.print_summary()
    return breakdown

# =============================================================================
# 17. EXAMPLE EXECUTION
# =============================================================================

if __name__ == "__main__":

    engine = CompensationEngine()
    engine.add_person(PersonKeys(person_id="P-001", role_id="ROLE-PRODUCER", team_id="TEAM-SALES", agency_id="AGY-001"))

    demo_plan = CompPlan(
        plan_id="PLAN-STD",
        name="Standard Producer Plan",
        status=PlanStatus.ACTIVE,
        versions=[PlanVersion(
            version_id="v1",
            is_current=True,
            rule_blocks=[
                RuleBlock(
                    name="Auto Raw New base",
                    apply_scope=ApplyScope.PRODUCT,
                    payout_type=PayoutType.FLAT_PER_APP,
                    base_payout_value=Decimal("10"),
                    filters=ScopeFilters(product_ids=frozenset({"Auto Raw New"})),
                ),
                RuleBlock(
                    name="Life (Term / Whole)",
                    apply_scope=ApplyScope.PREMIUM_CATEGORY,
                    payout_type=PayoutType.PERCENT_OF_PREMIUM,
                    filters=ScopeFilters(premium_categories=frozenset({PremiumCategory.FS})),
                    tier_mode=TierMode.TIERS,
                    tier_basis=TierBasis.PREMIUM_SUM,
                    tiers=[
                        TierRow(Decimal("0"), Decimal("3000"), Decimal("0.10")),
                        TierRow(Decimal("3000"), None, Decimal("0.14")),
                    ],
                    order_index=1,
                ),
            ],
            gates=[Gate("Minimum apps", GateType.MIN_APPS, Decimal("3"))],
            bonus_modules=[BonusModule(
                name="Scorecard",
                bonus_type=BonusType.SCORECARD_TIER,
                highest_tier_wins=True,
                tiers=[
                    ScorecardTier("Bronze", 1, conditions=[Condition(MetricSource.TOTAL_PREMIUM, Operator.GTE, Decimal("2000"))],
                                  rewards=[Reward(RewardType.ADD_FLAT_DOLLARS, dollar_value=Decimal("100"))]),
                    ScorecardTier("Silver", 2, conditions=[Condition(MetricSource.TOTAL_PREMIUM, Operator.GTE, Decimal("6000"))],
                                  rewards=[Reward(RewardType.ADD_PERCENT_OF_BUCKET, percent_value=Decimal("0.02"))]),
                ],
            )],
        )],
    )
    engine.add_assignment(PlanAssignment(AssignmentScope.ROLE, "ROLE-PRODUCER", demo_plan))

    sold = [
        SoldRecord(f"SP-{i}", "Auto Raw New", "LOB-AUTO", PremiumCategory.PC, ProductType.PERSONAL,
                   Decimal("1200"), date(2026, 2, 3 + i), PolicyStatus.ISSUED, "P-001", "Auto Raw New", "Auto")
        for i in range(3)
    ] + [
        SoldRecord("SP-9", "Term", "LOB-LIFE", PremiumCategory.FS, ProductType.PERSONAL,
                   Decimal("2500"), date(2026, 2, 20), PolicyStatus.PAID, "P-001", "Term", "Life"),
    ]

    breakdown = engine.run_period("P-001", "2026-02", sold)
    breakdown.print_summary()
