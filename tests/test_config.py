"""
Tests for settings and the cost-structure models.
"""
import pandas as pd
import pytest
from pydantic import ValidationError

from koc_pnl.config import CostStructure, Fee, OtherCost, Settings


class TestFee:
    """Fixed fees scale with successful orders, percentage fees with NMV."""

    def test_fixed(self):
        assert Fee(type='fixed', value=3_000).amount(2_000_000, 10) == 30_000

    def test_percent(self):
        assert Fee(type='percent', value=2).amount(2_000_000, 10) == 40_000

    def test_vectorized(self):
        out = Fee(type='fixed', value=100).amount(pd.Series([0.0, 5.0]), pd.Series([0, 3]))
        assert out.tolist() == [0, 300]

    def test_rejects_negative_and_unknown_type(self):
        with pytest.raises(ValidationError):
            Fee(value=-1)
        with pytest.raises(ValidationError):
            Fee(type='monthly', value=1)


def test_cost_structure_totals():
    costs = CostStructure(
        platform_fee_percent=5,
        other_costs=[OtherCost(name='Đóng gói', value=1_000), OtherCost(name='Marketing', type='percent', value=1)],
    )
    assert costs.platform_fee(1_000_000) == 50_000
    assert costs.other_fees(1_000_000, 4) == 4_000 + 10_000
    assert CostStructure().other_fees(1_000_000, 4) == 0.0


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv('KOC_PNL_PLATFORM_FEE_PERCENT', '4.5')
    monkeypatch.setenv('KOC_PNL_OPERATING_FEE_TYPE', 'percent')
    monkeypatch.setenv('KOC_PNL_MATERIALITY_RATIO', '0.01')
    settings = Settings()

    assert settings.materiality_ratio == 0.01
    costs = settings.default_cost_structure()
    assert costs.platform_fee_percent == 4.5
    assert costs.operating_fee.type == 'percent'


def test_default_cost_structure_is_zero():
    costs = Settings().default_cost_structure()
    assert costs.platform_fee(1_000_000) == 0
    assert costs.operating_fee.amount(1_000_000, 10) == 0
    assert costs.other_costs == []
