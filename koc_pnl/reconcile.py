"""
Profit-and-loss reconciliation.

Ad aggregates, order lines and inventory cost are merged into one financial
record per creator and per product. Both variants run through the same fold:
the only difference is which column of the enriched orders is the entity key
and which ad aggregate is joined against it.
"""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np
import pandas as pd
from loguru import logger

from koc_pnl.ads import AD_STAT_COLUMNS, ad_summary, creator_ad_stats, product_ad_stats
from koc_pnl.cogs import InventoryIndex
from koc_pnl.config import CostStructure, get_settings
from koc_pnl.errors import MissingPrerequisiteError
from koc_pnl.ingestion import ORGANIC_CREATOR, empty_frame
from koc_pnl.parsing import clean_text, is_blank, normalize_identity, normalize_name, normalize_phrase, normalize_sku, ratio

FAILED_STATUS_PHRASES = ('đã hủy', 'đã đóng', 'thất bại', 'cancel', 'failed', 'closed')
REFUND_PHRASES = ('hoàn tiền', 'refund')

HEALTHY = 'HEALTHY'
NEUTRAL = 'NEUTRAL'
BLEEDING = 'BLEEDING'

STOCK_OUT = 'STOCK_OUT'
INVENTORY_ALERT = 'INVENTORY_ALERT'
KILL = 'KILL'
SCALE = 'SCALE'
MAINTAIN = 'MAINTAIN'
OPTIMIZE = 'OPTIMIZE'

OUT_OF_STOCK_LABEL = 'Hết hàng'
NO_SALES_LABEL = '> 999 ngày'
OVER_A_YEAR_LABEL = '> 1 năm'
UNKNOWN_STOCK_LABEL = 'N/A'

# product key for order lines with neither a product id nor a seller SKU
UNKNOWN_PRODUCT = 'unknown'

VIDEO_LINK = 'https://www.tiktok.com/@{creator}/video/{content_id}'

ENTITY_COLUMNS = [
    'key', 'name', 'ads_cost', 'ads_gmv', 'order_gmv', 'nmv', 'commission', 'cogs', 'gross_profit',
    'platform_fee', 'operating_fee', 'other_fees', 'total_fees', 'net_profit',
    'total_orders', 'success_orders', 'failed_orders', 'return_cancel_pct',
    'real_roas', 'break_even_roas', 'sold_qty', 'stock_quantity', 'days_on_hand', 'days_on_hand_display',
    'health', 'action', 'has_ads', 'has_orders',
]
CREATOR_COLUMNS = ENTITY_COLUMNS + ['latest_video_link']
PRODUCT_COLUMNS = ENTITY_COLUMNS + ['product_id', 'seller_sku', 'product_name']


class EntityKind(str, Enum):
    CREATOR = 'creator'
    PRODUCT = 'product'

    @property
    def order_key(self):
        return f"{self.value}_key"

    @property
    def columns(self):
        return CREATOR_COLUMNS if self is EntityKind.CREATOR else PRODUCT_COLUMNS


@dataclass
class ReconciliationResult:
    creators: pd.DataFrame
    products: pd.DataFrame
    unmapped_creators: pd.DataFrame
    unmapped_products: pd.DataFrame
    unmatched_order_creators: pd.DataFrame
    not_found_skus: List[str] = field(default_factory=list)
    orders: Optional[pd.DataFrame] = None
    total_orders: int = 0
    cogs_found_count: int = 0
    period_days: int = 30


# ================= 1. 订单状态 & 订单富化 =================
def classify_order_status(status, return_status=''):
    """True when the order counts toward net revenue."""
    status = normalize_phrase(status)
    return_status = normalize_phrase(return_status)
    if any(phrase in status for phrase in FAILED_STATUS_PHRASES):
        return False
    if any(phrase in return_status for phrase in REFUND_PHRASES):
        return False
    return True


def enrich_orders(orders, index):
    """Attach success flag, resolved COGS and entity keys to every order line."""
    df = orders.copy()
    df['is_success'] = [classify_order_status(s, r) for s, r in zip(df['status'], df['return_status'])]

    matches = [index.match(sku, name) for sku, name in zip(df['seller_sku'], df['product_name'])]
    df['unit_cogs'] = [m.unit_cost for m in matches]
    df['cogs_tier'] = [m.tier for m in matches]
    df['cogs_found'] = pd.Series([m.found for m in matches], index=df.index, dtype=bool)
    df['line_cogs'] = df['unit_cogs'] * df['quantity']

    df['creator_key'] = df['creator'].map(normalize_identity)
    df['product_key'] = [pid or sku or UNKNOWN_PRODUCT for pid, sku in zip(df['product_id'], df['seller_sku'])]
    df['stock_ref'] = [
        normalize_sku(sku) or normalize_name(name) for sku, name in zip(df['seller_sku'], df['product_name'])
    ]
    df['is_success'] = df['is_success'].astype(bool)
    df['unit_cogs'] = df['unit_cogs'].astype(float)
    df['line_cogs'] = df['line_cogs'].astype(float)
    return df


def sales_period_days(orders, default=30):
    """Days covered by the order export, inclusive; default when created times do not parse."""
    if orders is None or orders.empty or 'created_time' not in orders:
        return default
    times = pd.to_datetime(orders['created_time'], errors='coerce').dropna()
    if times.empty:
        return default
    return max((times.max().normalize() - times.min().normalize()).days + 1, 1)


def format_days_on_hand(stock, sold_qty, period_days=30):
    if stock is None or pd.isna(stock):
        return math.nan, UNKNOWN_STOCK_LABEL
    if stock <= 0:
        return 0.0, OUT_OF_STOCK_LABEL
    if sold_qty <= 0:
        return math.nan, NO_SALES_LABEL

    days = stock / (sold_qty / period_days)
    if days > 365:
        return days, OVER_A_YEAR_LABEL
    return days, f"{round(days)} ngày"


# ================= 2. 订单按实体折叠 =================
def fold_orders(enriched, kind, index):
    key_col = kind.order_key
    df = enriched[enriched[key_col] != '']
    if df.empty:
        return pd.DataFrame()

    success = df['is_success']
    df = df.assign(
        nmv=df['revenue'].where(success, 0.0),
        success_commission=df['commission'].where(success, 0.0),
        success_cogs=df['line_cogs'].where(success, 0.0),
        success_qty=df['quantity'].where(success, 0.0),
        failed=~success,
    )
    folded = df.groupby(key_col, sort=False).agg(
        order_name=('creator', 'first'),
        product_id=('product_id', 'first'),
        seller_sku=('seller_sku', 'first'),
        product_name=('product_name', 'first'),
        order_gmv=('revenue', 'sum'),
        nmv=('nmv', 'sum'),
        commission=('success_commission', 'sum'),
        cogs=('success_cogs', 'sum'),
        sold_qty=('success_qty', 'sum'),
        total_orders=('order_id', 'size'),
        failed_orders=('failed', 'sum'),
    )
    folded['failed_orders'] = folded['failed_orders'].astype(int)
    folded['success_orders'] = folded['total_orders'] - folded['failed_orders']

    # stock summed over the distinct inventory items the entity sold
    refs = df[df['stock_ref'] != ''].drop_duplicates([key_col, 'stock_ref'])
    refs = refs.assign(stock=[index.stock_for(s, n) for s, n in zip(refs['seller_sku'], refs['product_name'])])
    folded['stock_quantity'] = refs.dropna(subset=['stock']).groupby(key_col)['stock'].sum()

    if kind is EntityKind.CREATOR:
        top = (
            df[success].sort_values('revenue', ascending=False, kind='stable')
            .drop_duplicates(key_col)
            .set_index(key_col)
        )
        folded['latest_video_link'] = pd.Series(
            [video_link(c, v) for c, v in zip(top['creator'], top['content_id'])], index=top.index, dtype=object,
        )
        folded['latest_video_link'] = folded['latest_video_link'].fillna('')
    return folded


def video_link(creator, content_id):
    creator = clean_text(creator)
    if not creator or creator == ORGANIC_CREATOR or not content_id:
        return ''
    return VIDEO_LINK.format(creator=creator.lstrip('@'), content_id=content_id)


# ================= 3. 合并 & 费用 & 指标 =================
def merge_entities(kind, ad_stats, folded):
    ad_stats = ad_stats.set_index('key') if not ad_stats.empty else pd.DataFrame(columns=AD_STAT_COLUMNS[1:])
    keys = list(ad_stats.index) + [k for k in folded.index if k not in ad_stats.index]
    frame = pd.DataFrame(index=pd.Index(keys, name='key'))

    frame['has_ads'] = frame.index.isin(ad_stats.index)
    frame['has_orders'] = frame.index.isin(folded.index)
    frame['ads_cost'] = ad_stats['cost'].reindex(frame.index).fillna(0.0).astype(float)
    frame['ads_gmv'] = ad_stats['gross_revenue'].reindex(frame.index).fillna(0.0).astype(float)

    for col in ['order_gmv', 'nmv', 'commission', 'cogs', 'sold_qty']:
        frame[col] = folded[col].reindex(frame.index).fillna(0.0).astype(float) if not folded.empty else 0.0
    for col in ['total_orders', 'success_orders', 'failed_orders']:
        frame[col] = folded[col].reindex(frame.index).fillna(0).astype(int) if not folded.empty else 0
    if not folded.empty:
        frame['stock_quantity'] = folded['stock_quantity'].reindex(frame.index).astype(float)
    else:
        frame['stock_quantity'] = np.nan

    ad_names = ad_stats['name'].reindex(frame.index)
    if kind is EntityKind.CREATOR:
        order_names = folded['order_name'].reindex(frame.index) if not folded.empty else None
        frame['name'] = ad_names.fillna(order_names) if order_names is not None else ad_names
        if not folded.empty:
            frame['latest_video_link'] = folded['latest_video_link'].reindex(frame.index).fillna('')
        else:
            frame['latest_video_link'] = ''
    else:
        for col in ['product_id', 'seller_sku', 'product_name']:
            frame[col] = folded[col].reindex(frame.index).fillna('') if not folded.empty else ''
        # ad-only products are keyed by their ad product id
        frame['product_id'] = frame['product_id'].where(frame['has_orders'], frame.index.to_series())
        frame['product_name'] = frame['product_name'].where(frame['product_name'] != '', ad_names.fillna(''))
        frame['name'] = frame['product_name']
    frame['name'] = frame['name'].where(~frame['name'].map(is_blank), frame.index.to_series())
    return frame.reset_index()


def apply_fees(frame, cost_structure):
    nmv = frame['nmv']
    success = frame['success_orders']
    frame['platform_fee'] = cost_structure.platform_fee(nmv).astype(float)
    frame['operating_fee'] = cost_structure.operating_fee.amount(nmv, success).astype(float)
    frame['other_fees'] = 0.0
    frame['other_fees'] += cost_structure.other_fees(nmv, success)
    frame['total_fees'] = frame['platform_fee'] + frame['operating_fee'] + frame['other_fees']
    return frame


def derive_metrics(frame, settings, period_days):
    frame['gross_profit'] = frame['nmv'] - frame['cogs']
    frame['net_profit'] = frame['nmv'] - frame['cogs'] - frame['commission'] - frame['ads_cost'] - frame['total_fees']
    frame['real_roas'] = ratio(frame['nmv'], frame['ads_cost'])

    contribution = frame['nmv'] - frame['cogs'] - frame['commission'] - frame['total_fees']
    frame['break_even_roas'] = np.where(contribution > 0, frame['nmv'] / contribution.where(contribution > 0), np.inf)
    frame['return_cancel_pct'] = ratio(frame['failed_orders'].astype(float), frame['total_orders'].astype(float), 100)

    days = [format_days_on_hand(s, q, period_days) for s, q in zip(frame['stock_quantity'], frame['sold_qty'])]
    frame['days_on_hand'] = [d for d, _ in days]
    frame['days_on_hand_display'] = [label for _, label in days]

    frame['health'] = np.select(
        [
            (frame['net_profit'] < settings.bleeding_net_profit) & (frame['ads_cost'] > settings.bleeding_min_ads_cost),
            frame['net_profit'] > settings.healthy_net_profit,
        ],
        [BLEEDING, HEALTHY],
        default=NEUTRAL,
    )

    stock_known = frame['stock_quantity'].notna()
    frame['action'] = np.select(
        [
            stock_known & (frame['stock_quantity'] <= 0) & (frame['sold_qty'] > 0),
            (frame['days_on_hand'] > 0) & (frame['days_on_hand'] < settings.inventory_alert_days),
            frame['health'] == BLEEDING,
            (frame['health'] == HEALTHY) & (frame['real_roas'] > frame['break_even_roas']) & (frame['real_roas'] > 1),
            frame['net_profit'] > 0,
        ],
        [STOCK_OUT, INVENTORY_ALERT, KILL, SCALE, MAINTAIN],
        default=OPTIMIZE,
    )
    return frame


def build_entities(kind, ad_stats, enriched, index, cost_structure, settings, period_days):
    folded = fold_orders(enriched, kind, index)
    frame = merge_entities(kind, ad_stats, folded)
    frame = apply_fees(frame, cost_structure)
    frame = derive_metrics(frame, settings, period_days)
    frame = frame.sort_values(['net_profit', 'key'], ascending=[False, True], kind='stable')
    return frame[kind.columns].reset_index(drop=True)


def unmapped_entities(ad_stats, entities, total_ad_revenue, materiality_ratio):
    """Ad-only entities whose ad revenue is too large to ignore, largest first."""
    if ad_stats.empty:
        return ad_stats
    ordered = set(entities.loc[entities['has_orders'], 'key'])
    threshold = total_ad_revenue * materiality_ratio
    unmapped = ad_stats[~ad_stats['key'].isin(ordered) & (ad_stats['gross_revenue'] > threshold)]
    return unmapped.sort_values('gross_revenue', ascending=False, kind='stable').reset_index(drop=True)


# ================= 4. 主入口 =================
def reconcile(ads, orders=None, inventory=None, cost_structure=None, settings=None):
    settings = settings or get_settings()
    if ads is None or ads.empty:
        raise MissingPrerequisiteError(
            "Dữ liệu quảng cáo (Ads Data) chưa được tải. Vui lòng tải file quảng cáo trước (load ads first)."
        )
    if cost_structure is None:
        cost_structure = settings.default_cost_structure()
    elif not isinstance(cost_structure, CostStructure):
        cost_structure = CostStructure.model_validate(cost_structure)
    if orders is None:
        orders = empty_frame('orders')
    if inventory is None:
        inventory = empty_frame('inventory')

    index = InventoryIndex(inventory)
    enriched = enrich_orders(orders, index)
    period_days = sales_period_days(orders, settings.default_period_days)

    creator_stats = creator_ad_stats(ads, settings)
    product_stats = product_ad_stats(ads, settings)
    creators = build_entities(EntityKind.CREATOR, creator_stats, enriched, index, cost_structure, settings, period_days)
    products = build_entities(EntityKind.PRODUCT, product_stats, enriched, index, cost_structure, settings, period_days)

    total_ad_revenue = ad_summary(ads)['total_gmv']
    unmapped_creators = unmapped_entities(creator_stats, creators, total_ad_revenue, settings.materiality_ratio)
    unmapped_products = unmapped_entities(product_stats, products, total_ad_revenue, settings.materiality_ratio)

    organic_key = normalize_identity(ORGANIC_CREATOR)
    unmatched = creators[~creators['has_ads'] & (creators['key'] != organic_key)]
    unmatched = unmatched[['key', 'name', 'order_gmv', 'nmv', 'total_orders']]
    unmatched = unmatched.sort_values('order_gmv', ascending=False, kind='stable').reset_index(drop=True)

    successful = enriched[enriched['is_success']]
    found = successful['cogs_found']
    not_found = successful.loc[~found & (successful['seller_sku'] != ''), 'seller_sku']

    result = ReconciliationResult(
        creators=creators,
        products=products,
        unmapped_creators=unmapped_creators,
        unmapped_products=unmapped_products,
        unmatched_order_creators=unmatched,
        not_found_skus=sorted(set(not_found)),
        orders=enriched,
        total_orders=len(enriched),
        cogs_found_count=int(found.sum()),
        period_days=period_days,
    )
    logger.info(
        f"Reconciled {len(creators)} creators, {len(products)} products from {result.total_orders} orders "
        f"(COGS found {result.cogs_found_count}, unmapped creators {len(unmapped_creators)}, "
        f"SKUs not found {len(result.not_found_skus)} in {len(index)} inventory SKUs)"
    )
    return result
