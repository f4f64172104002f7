"""
Configuration for the KOC P&L dashboard
"""
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

FeeType = Literal['fixed', 'percent']


class Fee(BaseModel):
    type: FeeType = 'fixed'
    value: float = Field(default=0.0, ge=0)

    def amount(self, nmv, success_orders):
        # fixed = per successful order, percent = share of NMV
        if self.type == 'fixed':
            return self.value * success_orders
        return nmv * (self.value / 100)


class OtherCost(Fee):
    id: Optional[str] = None
    name: str = ''


class CostStructure(BaseModel):
    """Fee schedule applied uniformly to every reconciled entity."""

    platform_fee_percent: float = Field(default=0.0, ge=0)
    operating_fee: Fee = Field(default_factory=Fee)
    other_costs: List[OtherCost] = Field(default_factory=list)

    def platform_fee(self, nmv):
        return nmv * self.platform_fee_percent / 100

    def other_fees(self, nmv, success_orders):
        return sum((cost.amount(nmv, success_orders) for cost in self.other_costs), 0.0)


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_prefix='KOC_PNL_', env_file='.env', extra='ignore')

    app_name: str = "TikTok KOC P&L"
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Ingestion
    header_scan_rows: int = 20
    orders_file_marker: str = "creator_order_all"
    inventory_file_marker: str = "Danh_sách_tồn_kho"

    # Reconciliation
    materiality_ratio: float = 0.005
    bleeding_net_profit: float = -500_000
    bleeding_min_ads_cost: float = 1_000_000
    healthy_net_profit: float = 500_000
    effective_video_roi: float = 4.0
    inventory_alert_days: float = 7
    default_period_days: int = 30

    # Default cost structure
    platform_fee_percent: float = 0.0
    operating_fee_type: FeeType = 'fixed'
    operating_fee_value: float = 0.0

    # Source cache
    cache_dir: str = ".cache/koc_pnl"
    cache_row_limit: int = 1000
    cache_max_bytes: int = 5 * 1024 * 1024

    def default_cost_structure(self):
        return CostStructure(
            platform_fee_percent=self.platform_fee_percent,
            operating_fee=Fee(type=self.operating_fee_type, value=self.operating_fee_value),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
