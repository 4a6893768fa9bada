from datetime import date
from decimal import Decimal

import pytest

from compensation_engine import PolicyStatus, PremiumCategory, ProductType, SoldRecord


@pytest.fixture
def make_record():
    counter = {"n": 0}

    def _make(
        product_id: str = "Auto Raw New",
        premium: str = "1000",
        status: PolicyStatus = PolicyStatus.ISSUED,
        category: PremiumCategory = PremiumCategory.PC,
        lob_id: str = "LOB-AUTO",
        product_type: ProductType = ProductType.PERSONAL,
        day: int = 10,
        seller_id: str = "P-001",
        record_id: str = "",
    ) -> SoldRecord:
        counter["n"] += 1
        return SoldRecord(
            record_id=record_id or f"SP-{counter['n']}",
            product_id=product_id,
            lob_id=lob_id,
            premium_category=category,
            product_type=product_type,
            premium=Decimal(premium),
            date_sold=date(2026, 2, day),
            status=status,
            seller_id=seller_id,
        )

    return _make
