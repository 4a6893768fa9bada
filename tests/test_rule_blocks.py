from decimal import Decimal

import pytest

from compensation_engine import (
    DEFAULT_STATUS_FILTER,
    ApplyScope,
    PayoutType,
    PolicyStatus,
    PremiumCategory,
    ResolvedPlan,
    RuleBlock,
    ScopeFilters,
    TierBasis,
    TierMode,
    TierRow,
    aggregate_metrics,
    evaluate_rule_block,
    evaluate_rule_blocks,
    select_tier,
)

AUTO = ScopeFilters(product_ids=frozenset({"Auto Raw New"}))
FS = ScopeFilters(premium_categories=frozenset({PremiumCategory.FS}))


def _evaluate(rule: RuleBlock, records, warnings=None):
    metrics = aggregate_metrics(records)
    return evaluate_rule_block(rule, records, DEFAULT_STATUS_FILTER, metrics, {}, warnings)


def test_flat_per_app_allocates_per_record(make_record) -> None:
    records = [make_record(record_id=f"A{i}") for i in range(3)]
    rule = RuleBlock("Auto base", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, Decimal("10"), filters=AUTO)
    result = _evaluate(rule, records)

    assert result.amount == Decimal("30")
    assert result.per_record == {"A0": Decimal("10"), "A1": Decimal("10"), "A2": Decimal("10")}
    assert result.per_product == {"Auto Raw New": Decimal("30")}
    assert result.detail == "Base rate $10.00 per app"


def test_percent_of_premium_is_proportional(make_record) -> None:
    records = [
        make_record(product_id="Term", premium="2000", category=PremiumCategory.FS, record_id="L1"),
        make_record(product_id="Whole", premium="3000", category=PremiumCategory.FS, record_id="L2"),
    ]
    rule = RuleBlock("Life", ApplyScope.PREMIUM_CATEGORY, PayoutType.PERCENT_OF_PREMIUM, Decimal("0.10"), filters=FS)
    result = _evaluate(rule, records)

    assert result.amount == Decimal("500")
    assert result.per_record == {"L1": Decimal("200"), "L2": Decimal("300")}
    assert result.premium_sum == Decimal("5000")


def test_lump_sum_splits_evenly(make_record) -> None:
    records = [make_record(record_id=f"A{i}") for i in range(3)]
    rule = RuleBlock("Lump", ApplyScope.PRODUCT, PayoutType.FLAT_LUMP_SUM, Decimal("300"), filters=AUTO)
    result = _evaluate(rule, records)
    assert result.amount == Decimal("300")
    assert set(result.per_record.values()) == {Decimal("100")}


def test_no_records_in_scope_skips_rule(make_record) -> None:
    rule = RuleBlock("Auto", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, Decimal("10"), filters=AUTO)
    assert _evaluate(rule, [make_record(product_id="Homeowners")]) is None


def test_status_override_counts_written(make_record) -> None:
    records = [make_record(status=PolicyStatus.WRITTEN), make_record(status=PolicyStatus.ISSUED)]
    rule = RuleBlock(
        "Written auto", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, Decimal("5"),
        filters=AUTO, status_override=frozenset({PolicyStatus.WRITTEN, PolicyStatus.ISSUED}),
    )
    assert _evaluate(rule, records).amount == Decimal("10")


def test_min_threshold_skips_rule_below_basis(make_record) -> None:
    records = [make_record() for _ in range(3)]
    rule = RuleBlock(
        "Auto", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, Decimal("10"),
        filters=AUTO, min_threshold=Decimal("4"),
    )
    assert _evaluate(rule, records) is None
    records.append(make_record())
    assert _evaluate(rule, records).amount == Decimal("40")


LADDER = [
    TierRow(Decimal("0"), Decimal("5"), Decimal("5")),
    TierRow(Decimal("5"), Decimal("10"), Decimal("8")),
    TierRow(Decimal("10"), None, Decimal("12")),
]


def test_tiered_rule_pays_whole_basis_at_selected_tier(make_record) -> None:
    records = [make_record() for _ in range(7)]
    rule = RuleBlock(
        "Auto tiers", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP,
        filters=AUTO, tier_mode=TierMode.TIERS, tier_basis=TierBasis.APP_COUNT, tiers=LADDER,
    )
    result = _evaluate(rule, records)

    assert result.selected_tier == 1
    assert result.payout_value == Decimal("8")
    assert result.amount == Decimal("56")
    assert result.detail == "Tiered on apps at $8.00 per app"

    ladder = result.tiers_status
    assert [t.label for t in ladder] == ["0 - 5", "5 - 10", "10+"]
    assert [t.achieved for t in ladder] == [False, True, False]
    assert ladder[2].left_text == "3 apps left"
    assert ladder[2].payout_label == "$12.00 per app"


def test_tier_boundary_belongs_to_upper_tier() -> None:
    assert select_tier(LADDER, Decimal("5")) == 1
    assert select_tier(LADDER, Decimal("10")) == 2
    assert select_tier(LADDER, Decimal("4.99")) == 0


def test_basis_in_gap_falls_back_to_last_tier(make_record) -> None:
    gapped = [
        TierRow(Decimal("0"), Decimal("3"), Decimal("5")),
        TierRow(Decimal("5"), None, Decimal("10")),
    ]
    assert select_tier(gapped, Decimal("4")) == 1
    assert select_tier([], Decimal("4")) is None

    records = [make_record() for _ in range(4)]
    rule = RuleBlock(
        "Gapped", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP,
        filters=AUTO, tier_mode=TierMode.TIERS, tiers=gapped,
    )
    result = _evaluate(rule, records)
    assert result.amount == Decimal("40")
    assert "using last tier" in result.trace


def test_tiered_percent_on_premium_sum(make_record) -> None:
    records = [
        make_record(product_id="Term", premium="2000", category=PremiumCategory.FS),
        make_record(product_id="Term", premium="2000", category=PremiumCategory.FS),
    ]
    rule = RuleBlock(
        "Life tiers", ApplyScope.PREMIUM_CATEGORY, PayoutType.PERCENT_OF_PREMIUM,
        filters=FS, tier_mode=TierMode.TIERS, tier_basis=TierBasis.PREMIUM_SUM,
        tiers=[TierRow(Decimal("0"), Decimal("3000"), Decimal("0.10")), TierRow(Decimal("3000"), None, Decimal("0.14"))],
    )
    result = _evaluate(rule, records)
    assert result.amount == Decimal("560")
    assert result.tiers_status[0].left_text is None
    assert result.tiers_status[1].achieved


def test_bucket_value_basis_reads_category_total(make_record) -> None:
    records = [
        make_record(premium="500"),
        make_record(product_id="Term", premium="4000", category=PremiumCategory.FS),
    ]
    rule = RuleBlock(
        "Auto on FS", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP,
        filters=AUTO, tier_mode=TierMode.TIERS, tier_basis=TierBasis.BUCKET_VALUE,
        bucket_category=PremiumCategory.FS,
        tiers=[TierRow(Decimal("0"), Decimal("3000"), Decimal("5")), TierRow(Decimal("3000"), None, Decimal("15"))],
    )
    result = _evaluate(rule, records)
    assert result.basis_value == Decimal("4000")
    assert result.amount == Decimal("15")


def test_tiered_rule_without_tiers_is_skipped_with_warning(make_record) -> None:
    warnings = []
    rule = RuleBlock("Broken", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, filters=AUTO, tier_mode=TierMode.TIERS)
    assert _evaluate(rule, [make_record()], warnings) is None
    assert warnings == ['Rule "Broken" skipped: tiered without tier rows.']


def test_unknown_payout_type_is_skipped(make_record) -> None:
    warnings = []
    rule = RuleBlock("Odd", ApplyScope.PRODUCT, None, Decimal("10"), filters=AUTO)
    assert _evaluate(rule, [make_record()], warnings) is None
    assert "unknown payout type" in warnings[0]


@pytest.mark.parametrize("reverse", [False, True])
def test_untiered_rule_order_does_not_change_total(make_record, reverse: bool) -> None:
    records = [
        make_record(premium="1000"),
        make_record(product_id="Term", premium="2000", category=PremiumCategory.FS),
    ]
    rules = [
        RuleBlock("Auto", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, Decimal("10"), filters=AUTO),
        RuleBlock("Life", ApplyScope.PREMIUM_CATEGORY, PayoutType.PERCENT_OF_PREMIUM, Decimal("0.05"), filters=FS),
    ]
    if reverse:
        rules.reverse()
    plan = ResolvedPlan("P", "v1", rule_blocks=rules)
    results = evaluate_rule_blocks(plan, records, DEFAULT_STATUS_FILTER, aggregate_metrics(records))
    assert sum(r.amount for r in results) == Decimal("110")


def test_overlapping_rules_both_pay(make_record) -> None:
    records = [make_record()]
    rules = [
        RuleBlock("By product", ApplyScope.PRODUCT, PayoutType.FLAT_PER_APP, Decimal("10"), filters=AUTO),
        RuleBlock(
            "By category", ApplyScope.PREMIUM_CATEGORY, PayoutType.FLAT_PER_APP, Decimal("3"),
            filters=ScopeFilters(premium_categories=frozenset({PremiumCategory.PC})),
        ),
    ]
    plan = ResolvedPlan("P", "v1", rule_blocks=rules)
    results = evaluate_rule_blocks(plan, records, DEFAULT_STATUS_FILTER, aggregate_metrics(records))
    assert [r.amount for r in results] == [Decimal("10"), Decimal("3")]
