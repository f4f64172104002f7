"""
Ad performance aggregation.

Folds the parsed ads frame into per-creator, per-product and per-campaign
statistics. Creator statistics only look at video creatives with a known
TikTok account; product and campaign statistics use every ad row.
"""
import pandas as pd

from koc_pnl.config import get_settings
from koc_pnl.ingestion import UNKNOWN_CREATOR
from koc_pnl.parsing import normalize_identity, ratio, safe_div

AD_STAT_COLUMNS = [
    'key', 'name', 'cost', 'gross_revenue', 'orders', 'impressions', 'clicks',
    'video_count', 'effective_video_count', 'product_count',
    'avg_roi', 'avg_cir', 'avg_cpc', 'avg_ctr', 'avg_cvr', 'top_product', 'top_product_gmv',
]

CAMPAIGN_COLUMNS = [
    'campaign_name', 'gross_revenue', 'cost', 'avg_roi', 'video_count', 'creator_count',
    'effective_video_count', 'top_creator', 'top_creator_gmv', 'top_video_title', 'top_video_roi',
]


def is_video_row(ads):
    return (ads['creative_type'].str.strip().str.lower() == 'video') & (ads['creator'] != UNKNOWN_CREATOR)


def video_rows(ads):
    if ads is None or ads.empty:
        return ads
    return ads[is_video_row(ads)]


# ================= 1. 通用聚合 =================
def aggregate_ads(ads, keys, name_col='creator', settings=None):
    """Fold ad rows by ``keys`` (a Series aligned with ``ads``); blank keys are dropped."""
    settings = settings or get_settings()
    if ads is None or ads.empty:
        return pd.DataFrame(columns=AD_STAT_COLUMNS)

    df = ads.assign(
        key=keys.values,
        weighted_cvr=ads['clicks'] * ads['cvr'],
        is_effective=ads['roi'] > settings.effective_video_roi,
    )
    df = df[df['key'] != '']
    if df.empty:
        return pd.DataFrame(columns=AD_STAT_COLUMNS)

    stats = df.groupby('key', sort=False).agg(
        name=(name_col, 'first'),
        cost=('cost', 'sum'),
        gross_revenue=('gross_revenue', 'sum'),
        orders=('orders', 'sum'),
        impressions=('impressions', 'sum'),
        clicks=('clicks', 'sum'),
        weighted_cvr=('weighted_cvr', 'sum'),
        video_count=('video_id', 'size'),
        effective_video_count=('is_effective', 'sum'),
        product_count=('campaign_name', 'nunique'),
    ).reset_index()

    stats['avg_roi'] = ratio(stats['gross_revenue'], stats['cost'])
    stats['avg_cir'] = ratio(stats['cost'], stats['gross_revenue'], 100)
    stats['avg_cpc'] = ratio(stats['cost'], stats['clicks'])
    stats['avg_ctr'] = ratio(stats['clicks'], stats['impressions'], 100)
    stats['avg_cvr'] = ratio(stats['weighted_cvr'], stats['clicks'])
    stats['effective_video_count'] = stats['effective_video_count'].astype(int)

    # top campaign by ad revenue inside each key
    by_product = (
        df.groupby(['key', 'campaign_name'], sort=False)['gross_revenue'].sum()
        .reset_index()
        .sort_values('gross_revenue', ascending=False, kind='stable')
        .drop_duplicates('key')
        .set_index('key')
    )
    stats['top_product'] = stats['key'].map(by_product['campaign_name'])
    stats['top_product_gmv'] = stats['key'].map(by_product['gross_revenue']).fillna(0.0)
    return stats[AD_STAT_COLUMNS]


def creator_ad_stats(ads, settings=None):
    videos = video_rows(ads)
    if videos is None or videos.empty:
        return pd.DataFrame(columns=AD_STAT_COLUMNS)
    keys = videos['creator'].map(normalize_identity)
    return aggregate_ads(videos, keys, 'creator', settings)


def product_ad_stats(ads, settings=None):
    if ads is None or ads.empty:
        return pd.DataFrame(columns=AD_STAT_COLUMNS)
    return aggregate_ads(ads, ads['product_id'], 'campaign_name', settings)


# ================= 2. 广告计划报表 =================
def campaign_ad_stats(ads, settings=None):
    settings = settings or get_settings()
    if ads is None or ads.empty:
        return pd.DataFrame(columns=CAMPAIGN_COLUMNS)

    totals = ads.groupby('campaign_name', sort=False).agg(
        gross_revenue=('gross_revenue', 'sum'),
        cost=('cost', 'sum'),
    )
    totals['avg_roi'] = ratio(totals['gross_revenue'], totals['cost'])

    videos = ads[is_video_row(ads)]
    effective = videos[videos['roi'] > settings.effective_video_roi]
    totals['video_count'] = videos.groupby('campaign_name')['video_id'].nunique()
    totals['creator_count'] = videos.groupby('campaign_name')['creator'].nunique()
    totals['effective_video_count'] = effective.groupby('campaign_name')['video_id'].nunique()
    for col in ['video_count', 'creator_count', 'effective_video_count']:
        totals[col] = totals[col].fillna(0).astype(int)

    top_creator = (
        videos.groupby(['campaign_name', 'creator'], sort=False)['gross_revenue'].sum()
        .reset_index()
        .sort_values('gross_revenue', ascending=False, kind='stable')
        .drop_duplicates('campaign_name')
        .set_index('campaign_name')
    )
    totals['top_creator'] = top_creator['creator']
    totals['top_creator_gmv'] = top_creator['gross_revenue']

    top_video = (
        videos.sort_values('roi', ascending=False, kind='stable')
        .drop_duplicates('campaign_name')
        .set_index('campaign_name')
    )
    totals['top_video_title'] = top_video['video_title']
    totals['top_video_roi'] = top_video['roi']

    out = totals.reset_index().sort_values('gross_revenue', ascending=False, kind='stable')
    return out[CAMPAIGN_COLUMNS].reset_index(drop=True)


# ================= 3. 汇总 =================
def ad_summary(ads, top_n=10):
    if ads is None or ads.empty:
        return {
            'total_gmv': 0.0, 'total_cost': 0.0, 'avg_roi': 0.0, 'avg_cir': 0.0,
            'avg_cpc': 0.0, 'avg_ctr': 0.0, 'avg_cvr': 0.0, 'top_products': [],
            'total_impressions': 0.0, 'total_orders': 0.0, 'total_clicks': 0.0,
            'total_kocs': 0, 'total_videos': 0,
        }

    total_gmv = float(ads['gross_revenue'].sum())
    total_cost = float(ads['cost'].sum())
    total_clicks = float(ads['clicks'].sum())
    total_impressions = float(ads['impressions'].sum())
    weighted_cvr = float((ads['clicks'] * ads['cvr']).sum())

    # creators and videos are counted from video creatives only
    videos = ads[is_video_row(ads)]

    product_gmv = ads.groupby('product_id', sort=False)['gross_revenue'].sum().sort_values(ascending=False, kind='stable')
    top_products = [
        {'product_id': pid, 'gmv': float(gmv)} for pid, gmv in product_gmv.head(top_n).items()
    ]

    return {
        'total_gmv': total_gmv,
        'total_cost': total_cost,
        'avg_roi': safe_div(total_gmv, total_cost),
        'avg_cir': safe_div(total_cost, total_gmv) * 100,
        'avg_cpc': safe_div(total_cost, total_clicks),
        'avg_ctr': safe_div(total_clicks, total_impressions) * 100,
        'avg_cvr': safe_div(weighted_cvr, total_clicks),
        'top_products': top_products,
        'total_impressions': total_impressions,
        'total_orders': float(ads['orders'].sum()),
        'total_clicks': total_clicks,
        'total_kocs': int(videos['creator'].map(normalize_identity).nunique()),
        'total_videos': int(videos['video_id'].nunique()),
    }
