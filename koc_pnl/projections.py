"""
Read-only views over a reconciliation result.

Everything here is a pure function of the reconciled frames (or of the
enriched order lines kept on the result): sorting, filtering and paging the
entity tables, per-creator drill-downs, dashboard totals and the plain
structures handed to the text-generation advisor.
"""
import math
from dataclasses import dataclass

import numpy as np
import pandas as pd

from koc_pnl.ads import aggregate_ads, is_video_row
from koc_pnl.parsing import compact_text, normalize_identity, ratio, safe_div

SORT_KEYS = {
    'net_profit_desc': ('net_profit', False),
    'net_profit_asc': ('net_profit', True),
    'nmv_desc': ('nmv', False),
    'return_cancel_pct_asc': ('return_cancel_pct', True),
    'commission_desc': ('commission', False),
    'cogs_desc': ('cogs', False),
    'ads_cost_desc': ('ads_cost', False),
}
DEFAULT_PAGE_SIZE = 20
ELLIPSIS = '...'

STAR = 'STAR'
COW = 'COW'
QUESTION = 'QUESTION'
DOG = 'DOG'

ROI_BUCKETS = {
    'poor': (-np.inf, 1.0),
    'average': (1.0, 2.0),
    'good': (2.0, 4.0),
    'excellent': (4.0, np.inf),
}
NO_VIDEO = 'no-video'


# ================= 1. 排序 / 筛选 / 分页 =================
def sort_entities(frame, sort_key='net_profit_desc'):
    if sort_key not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {sort_key}")
    col, ascending = SORT_KEYS[sort_key]
    return frame.sort_values(col, ascending=ascending, kind='stable').reset_index(drop=True)


def filter_entities(frame, query='', health=None, action=None):
    mask = pd.Series(True, index=frame.index)
    if query and query.strip():
        # vanity suffixes stay searchable
        needle = compact_text(query)
        names = frame['name'].map(compact_text)
        mask &= frame['key'].astype(str).str.contains(needle, regex=False) | names.str.contains(needle, regex=False)
    if health:
        mask &= frame['health'] == health
    if action:
        mask &= frame['action'] == action
    return frame[mask].reset_index(drop=True)


@dataclass
class Page:
    rows: pd.DataFrame
    page: int
    per_page: int
    total_items: int
    total_pages: int
    start_item: int
    end_item: int


def paginate(frame, page=1, per_page=DEFAULT_PAGE_SIZE):
    total = len(frame)
    per_page = max(int(per_page), 1)
    total_pages = 1 if per_page >= total else math.ceil(total / per_page)
    page = min(max(int(page), 1), total_pages)

    start = (page - 1) * per_page
    end = min(start + per_page, total)
    return Page(
        rows=frame.iloc[start:end],
        page=page,
        per_page=per_page,
        total_items=total,
        total_pages=total_pages,
        start_item=0 if total == 0 else start + 1,
        end_item=end,
    )


def page_numbers(current, total):
    """Page buttons: all pages up to 7, otherwise first, last and neighbours with ellipses."""
    if total <= 7:
        return list(range(1, total + 1))
    pages = [1]
    if current > 3:
        pages.append(ELLIPSIS)
    if current > 2:
        pages.append(current - 1)
    if current != 1 and current != total:
        pages.append(current)
    if current < total - 1:
        pages.append(current + 1)
    if current < total - 2:
        pages.append(ELLIPSIS)
    pages.append(total)
    return pages


# ================= 2. 汇总指标 =================
def summary_stats(creators):
    total_orders = int(creators['total_orders'].sum()) if not creators.empty else 0
    failed = int(creators['failed_orders'].sum()) if not creators.empty else 0
    return {
        'total_revenue': float(creators['order_gmv'].sum()),
        'total_nmv': float(creators['nmv'].sum()),
        'total_koc': len(creators),
        'active_koc': int((creators['total_orders'] > 0).sum()),
        'total_ads_cost': float(creators['ads_cost'].sum()),
        'total_cogs': float(creators['cogs'].sum()),
        'total_commission': float(creators['commission'].sum()),
        'total_net_profit': float(creators['net_profit'].sum()),
        'avg_return_rate': safe_div(failed, total_orders) * 100,
    }


def dashboard_metrics(creators, ad_summary):
    if creators.empty:
        return {'nmv': 0.0, 'return_rate': 0.0, 'cogs': 0.0, 'net_profit': 0.0, 'ads_cost': 0.0}
    return {
        'nmv': float(creators['nmv'].sum()),
        'return_rate': safe_div(creators['failed_orders'].sum(), creators['total_orders'].sum()) * 100,
        'cogs': float(creators['cogs'].sum()),
        'net_profit': float(creators['net_profit'].sum()),
        'ads_cost': ad_summary['total_cost'],
    }


def cost_breakdown(creators, ad_summary):
    if creators.empty:
        return {'ads': 0.0, 'cogs': 0.0, 'commission': 0.0, 'total': 1.0}
    ads = ad_summary['total_cost']
    cogs = float(creators['cogs'].sum())
    commission = float(creators['commission'].sum())
    total = ads + cogs + commission
    return {'ads': ads, 'cogs': cogs, 'commission': commission, 'total': total if total > 0 else 1.0}


def inventory_value(inventory, creators):
    if inventory is None or inventory.empty:
        return {'total_value': 0.0, 'total_cogs': 0.0}
    return {
        'total_value': float((inventory['stock'] * inventory['cogs']).sum()),
        'total_cogs': float(creators['cogs'].sum()) if not creators.empty else 0.0,
    }


# ================= 3. BCG 四象限 =================
def classify_bcg(entity, avg_gmv, avg_profit):
    high_gmv = entity['order_gmv'] >= avg_gmv
    high_profit = entity['net_profit'] >= avg_profit
    if high_gmv and high_profit:
        return STAR
    if high_gmv:
        return COW
    if high_profit:
        return QUESTION
    return DOG


def with_bcg(frame):
    out = frame.copy()
    if out.empty:
        out['bcg'] = pd.Series(dtype=object)
        return out
    avg_gmv = out['order_gmv'].mean()
    avg_profit = out['net_profit'].mean()
    out['bcg'] = [classify_bcg(row, avg_gmv, avg_profit) for _, row in out.iterrows()]
    return out


# ================= 4. 达人下钻 =================
def creator_orders(result, key):
    """Order lines of one creator with their resolved COGS and line profit."""
    orders = result.orders
    if orders is None or orders.empty:
        return pd.DataFrame(columns=[
            'order_id', 'product_name', 'status', 'quantity', 'price', 'cogs', 'commission', 'net_profit', 'is_return',
        ])
    df = orders[orders['creator_key'] == key]
    nmv = df['revenue'].where(df['is_success'], 0.0)
    return pd.DataFrame({
        'order_id': df['order_id'],
        'product_name': df['product_name'],
        'status': df['status'],
        'quantity': df['quantity'],
        'price': df['revenue'],
        'cogs': df['line_cogs'],
        'commission': df['commission'],
        'net_profit': nmv - df['line_cogs'] - df['commission'],
        'is_return': ~df['is_success'],
    }).reset_index(drop=True)


def creator_video_breakdown(result, ads, key):
    """Per referring video P&L for one creator; ad cost is summed over the creator's ad rows per video id."""
    columns = [
        'video_id', 'video_title', 'product_name', 'product_id', 'nmv', 'cogs', 'commission', 'return_count',
        'ads_cost', 'profit', 'roi', 'cir',
    ]
    orders = result.orders
    if orders is None or orders.empty:
        return pd.DataFrame(columns=columns)
    df = orders[orders['creator_key'] == key]
    if df.empty:
        return pd.DataFrame(columns=columns)

    success = df['is_success']
    df = df.assign(
        video_id=df['content_id'].where(df['content_id'] != '', NO_VIDEO),
        nmv=df['revenue'].where(success, 0.0),
        success_cogs=df['line_cogs'].where(success, 0.0),
        success_commission=df['commission'].where(success, 0.0),
        returned=~success,
    )
    videos = df.groupby('video_id', sort=False).agg(
        product_name=('product_name', 'first'),
        product_id=('product_id', 'first'),
        nmv=('nmv', 'sum'),
        cogs=('success_cogs', 'sum'),
        commission=('success_commission', 'sum'),
        return_count=('returned', 'sum'),
    )

    if ads is not None and not ads.empty:
        creator_ads = ads[ads['creator'].map(normalize_identity) == key]
        by_video = creator_ads.groupby('video_id', sort=False).agg(cost=('cost', 'sum'), title=('video_title', 'first'))
    else:
        by_video = pd.DataFrame(columns=['cost', 'title'])
    videos['ads_cost'] = by_video['cost'].reindex(videos.index).fillna(0.0).astype(float)
    videos['video_title'] = by_video['title'].reindex(videos.index).fillna('N/A')

    videos['return_count'] = videos['return_count'].astype(int)
    videos['profit'] = videos['nmv'] - videos['cogs'] - videos['commission'] - videos['ads_cost']
    videos['roi'] = ratio(videos['nmv'], videos['ads_cost'])
    videos['cir'] = ratio(videos['ads_cost'], videos['nmv'], 100)
    out = videos.reset_index().sort_values('nmv', ascending=False, kind='stable')
    return out[columns].reset_index(drop=True)


# ================= 5. 广告视图 =================
def creators_for_campaign(ads, campaign, settings=None):
    if ads is None or ads.empty:
        return aggregate_ads(ads, None, settings=settings)
    rows = ads[is_video_row(ads) & (ads['campaign_name'] == campaign)]
    stats = aggregate_ads(rows, rows['creator'], 'creator', settings)
    return stats.sort_values('gross_revenue', ascending=False, kind='stable').reset_index(drop=True)


def filter_videos_by_roi(ads, bucket):
    if bucket not in ROI_BUCKETS:
        raise ValueError(f"Unknown ROI bucket: {bucket}")
    low, high = ROI_BUCKETS[bucket]
    videos = ads[is_video_row(ads)]
    return videos[(videos['roi'] >= low) & (videos['roi'] < high)].reset_index(drop=True)


def roi_distribution(ads):
    if ads is None or ads.empty:
        return {bucket: 0 for bucket in ROI_BUCKETS}
    return {bucket: len(filter_videos_by_roi(ads, bucket)) for bucket in ROI_BUCKETS}


# ================= 6. 序列化 & AI 上下文 =================
def to_records(frame):
    """Plain dict rows; inf and NaN become None so nothing unbounded leaks to consumers."""
    if frame is None or frame.empty:
        return []
    clean = frame.replace([np.inf, -np.inf], np.nan).astype(object)
    clean = clean.where(clean.notna(), None)
    return clean.to_dict('records')


def financial_context_text(result, inventory=None, top_stock=10, top_losers=5):
    text = ''
    if inventory is not None and not inventory.empty:
        high_stock = inventory.sort_values('stock', ascending=False, kind='stable').head(top_stock)
        text += (
            "\n[CHIẾN LƯỢC XẢ KHO]\nCác sản phẩm sau đang có lượng tồn kho rất cao. "
            "Ưu tiên đề xuất ngân sách và ý tưởng để đẩy mạnh xả kho cho các mã SKU này:\n"
        )
        for row in high_stock.itertuples(index=False):
            text += f"- SKU: {row.sku}, Tồn kho: {row.stock:,.0f}\n"

    losing = result.creators[result.creators['net_profit'] < 0].sort_values('net_profit', kind='stable')
    if not losing.empty:
        text += (
            "\n[TỐI ƯU LỢI NHUẬN THỰC]\nCảnh báo quan trọng! Đừng chỉ nhìn vào ROI quảng cáo. "
            "Các KOC sau đây đang gây LỖ RÒNG trên thực tế. Cân nhắc cắt giảm ngân sách hoặc dừng hợp tác:\n"
        )
        for row in losing.head(top_losers).itertuples(index=False):
            text += f"- KOC: {row.name}, Lỗ ròng: {abs(row.net_profit):,.0f} đ\n"
    return text


def advisor_context(result, ad_summary, top_n=10):
    creators = result.creators
    return {
        'ads': dict(ad_summary),
        'pnl': summary_stats(creators),
        'top_creators': to_records(sort_entities(creators, 'net_profit_desc').head(top_n)),
        'losing_creators': to_records(sort_entities(creators[creators['net_profit'] < 0], 'net_profit_asc').head(top_n)),
        'top_products': to_records(sort_entities(result.products, 'nmv_desc').head(top_n)),
        'unmapped_creators': to_records(result.unmapped_creators[['key', 'name', 'cost', 'gross_revenue']]),
        'not_found_skus': list(result.not_found_skus),
        'period_days': result.period_days,
    }
