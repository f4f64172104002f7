"""
Tests for the read-only views: sorting, filtering and paging entity
tables, the BCG matrix, per-creator drill-downs and the advisor payload.
"""
import pandas as pd
import pytest

from koc_pnl.ads import ad_summary
from koc_pnl.projections import (
    COW, DOG, ELLIPSIS, QUESTION, STAR,
    classify_bcg, cost_breakdown, creator_orders, creator_video_breakdown, creators_for_campaign,
    dashboard_metrics, filter_entities, filter_videos_by_roi, financial_context_text, inventory_value, paginate, page_numbers,
    roi_distribution, sort_entities, summary_stats, with_bcg, advisor_context,
)
from koc_pnl.reconcile import reconcile


@pytest.fixture
def result(scenario_a, settings):
    ads, orders, inventory = scenario_a
    return reconcile(ads, orders, inventory, settings=settings)


def entity_frame(n):
    return pd.DataFrame({
        'key': [f"koc{i:02d}" for i in range(n)],
        'name': [f"KOC {i:02d}" for i in range(n)],
        'net_profit': [float(i % 7) for i in range(n)],
        'nmv': [float(i) for i in range(n)],
        'health': ['HEALTHY' if i % 2 else 'NEUTRAL' for i in range(n)],
        'action': ['SCALE' if i % 3 == 0 else 'MAINTAIN' for i in range(n)],
    })


# ────────────────────────────────────────────
# SORT / FILTER / PAGE
# ────────────────────────────────────────────


class TestSortFilter:
    """Table controls."""

    def test_sort(self):
        frame = entity_frame(5)
        assert sort_entities(frame, 'nmv_desc')['key'].tolist() == ['koc04', 'koc03', 'koc02', 'koc01', 'koc00']
        assert sort_entities(frame, 'net_profit_asc')['net_profit'].tolist() == [0, 1, 2, 3, 4]

    def test_unknown_sort_key(self):
        with pytest.raises(ValueError):
            sort_entities(entity_frame(2), 'bogus')

    def test_query_matches_normalized_key_or_name(self):
        frame = pd.DataFrame({'key': ['nguyenvana', 'kocb'], 'name': ['Nguyễn Văn A', 'KOC B'],
                              'health': ['NEUTRAL'] * 2, 'action': ['MAINTAIN'] * 2})
        assert filter_entities(frame, 'Nguyễn')['key'].tolist() == ['nguyenvana']
        assert filter_entities(frame, '  ')['key'].tolist() == ['nguyenvana', 'kocb']

    def test_query_keeps_vanity_suffix_words(self):
        frame = pd.DataFrame({'key': ['mimi', 'kocb'], 'name': ['Mimi Official Store', 'KOC B'],
                              'health': ['NEUTRAL'] * 2, 'action': ['MAINTAIN'] * 2})
        assert filter_entities(frame, 'store')['key'].tolist() == ['mimi']
        assert filter_entities(frame, 'Official')['key'].tolist() == ['mimi']

    def test_health_and_action(self):
        frame = entity_frame(6)
        out = filter_entities(frame, health='HEALTHY', action='SCALE')
        assert out['key'].tolist() == ['koc03']


class TestPaginate:
    """Page bounds are clamped."""

    def test_last_page(self):
        page = paginate(entity_frame(45), page=3, per_page=20)
        assert page.total_pages == 3
        assert (page.start_item, page.end_item) == (41, 45)
        assert len(page.rows) == 5

    def test_clamped(self):
        assert paginate(entity_frame(45), page=9, per_page=20).page == 3
        assert paginate(entity_frame(45), page=0, per_page=20).page == 1

    def test_single_page_and_empty(self):
        assert paginate(entity_frame(20), per_page=20).total_pages == 1
        empty = paginate(entity_frame(0))
        assert (empty.total_pages, empty.start_item, empty.end_item) == (1, 0, 0)


@pytest.mark.parametrize("current, total, expected", [
    (2, 5, [1, 2, 3, 4, 5]),
    (1, 10, [1, 2, ELLIPSIS, 10]),
    (3, 10, [1, 2, 3, 4, ELLIPSIS, 10]),
    (5, 10, [1, ELLIPSIS, 4, 5, 6, ELLIPSIS, 10]),
    (9, 10, [1, ELLIPSIS, 8, 9, 10]),
    (10, 10, [1, ELLIPSIS, 9, 10]),
])
def test_page_numbers(current, total, expected):
    assert page_numbers(current, total) == expected


# ────────────────────────────────────────────
# BCG
# ────────────────────────────────────────────


def test_classify_bcg_boundaries_inclusive():
    assert classify_bcg({'order_gmv': 100, 'net_profit': 10}, 100, 10) == STAR
    assert classify_bcg({'order_gmv': 100, 'net_profit': 9}, 100, 10) == COW
    assert classify_bcg({'order_gmv': 99, 'net_profit': 10}, 100, 10) == QUESTION
    assert classify_bcg({'order_gmv': 99, 'net_profit': 9}, 100, 10) == DOG


def test_with_bcg_uses_means():
    frame = pd.DataFrame({'order_gmv': [300.0, 100.0, 0.0], 'net_profit': [-50.0, 100.0, -10.0]})
    assert with_bcg(frame)['bcg'].tolist() == [COW, QUESTION, DOG]
    assert 'bcg' in with_bcg(frame.iloc[0:0]).columns


# ────────────────────────────────────────────
# DASHBOARD TOTALS
# ────────────────────────────────────────────


def test_summary_and_dashboard(result, scenario_a):
    ads = scenario_a[0]
    stats = summary_stats(result.creators)
    assert stats['total_nmv'] == 2_000_000
    assert stats['total_koc'] == 1
    assert stats['active_koc'] == 1
    assert stats['total_net_profit'] == 500_000
    assert stats['avg_return_rate'] == 0.0

    metrics = dashboard_metrics(result.creators, ad_summary(ads))
    assert metrics['ads_cost'] == 500_000
    breakdown = cost_breakdown(result.creators, ad_summary(ads))
    assert breakdown['total'] == 500_000 + 800_000 + 200_000


def test_inventory_value(result, scenario_a):
    inventory = scenario_a[2]
    value = inventory_value(inventory, result.creators)
    assert value['total_value'] == 100 * 80_000
    assert value['total_cogs'] == 800_000
    assert inventory_value(None, result.creators)['total_value'] == 0.0


# ────────────────────────────────────────────
# DRILL-DOWN
# ────────────────────────────────────────────


def test_creator_orders(result):
    lines = creator_orders(result, 'koca')
    assert len(lines) == 10
    assert lines['net_profit'].tolist() == [100_000.0] * 10
    assert not lines['is_return'].any()
    assert creator_orders(result, 'nobody').empty


def test_video_breakdown(make_ads, make_orders, make_inventory, settings):
    ads = make_ads([
        {'video_id': 'V1', 'cost': 100_000, 'gmv': 300_000, 'title': 'Video 1'},
        {'video_id': 'V1', 'campaign': 'Camp B', 'cost': 50_000, 'gmv': 0, 'title': 'Video 1'},
        {'video_id': 'V2', 'cost': 10_000, 'gmv': 0, 'title': 'Video 2'},
    ])
    orders = make_orders([
        {'content_id': 'V1', 'revenue': 200_000, 'commission': 10_000},
        {'content_id': 'V1', 'revenue': 200_000, 'status': 'Đã hủy'},
        {'content_id': '', 'revenue': 50_000},
    ])
    inventory = make_inventory([{'sku': 'SKU-A', 'cogs': 40_000, 'stock': 10}])
    result = reconcile(ads, orders, inventory, settings=settings)

    videos = creator_video_breakdown(result, ads, 'koca').set_index('video_id')
    assert list(videos.index) == ['V1', 'no-video']

    v1 = videos.loc['V1']
    assert v1['video_title'] == 'Video 1'
    assert v1['nmv'] == 200_000
    assert v1['cogs'] == 40_000
    assert v1['return_count'] == 1
    # both ad rows of V1 are counted
    assert v1['ads_cost'] == 150_000
    assert v1['profit'] == 200_000 - 40_000 - 10_000 - 150_000

    organic = videos.loc['no-video']
    assert organic['ads_cost'] == 0
    assert organic['video_title'] == 'N/A'
    assert organic['roi'] == 0


# ────────────────────────────────────────────
# ADS VIEWS
# ────────────────────────────────────────────


def test_roi_buckets(make_ads):
    ads = make_ads([
        {'video_id': 'V1', 'roi': 0.5}, {'video_id': 'V2', 'roi': 1.5},
        {'video_id': 'V3', 'roi': 3}, {'video_id': 'V4', 'roi': 4},
    ])
    assert roi_distribution(ads) == {'poor': 1, 'average': 1, 'good': 1, 'excellent': 1}
    assert filter_videos_by_roi(ads, 'excellent')['video_id'].tolist() == ['V4']
    with pytest.raises(ValueError):
        filter_videos_by_roi(ads, 'great')


def test_creators_for_campaign(make_ads):
    ads = make_ads([
        {'creator': 'a', 'campaign': 'C1', 'gmv': 10, 'cost': 1},
        {'creator': 'b', 'campaign': 'C1', 'gmv': 30, 'cost': 1},
        {'creator': 'c', 'campaign': 'C2', 'gmv': 99, 'cost': 1},
    ])
    assert creators_for_campaign(ads, 'C1')['key'].tolist() == ['b', 'a']


# ────────────────────────────────────────────
# ADVISOR PAYLOAD
# ────────────────────────────────────────────


def test_advisor_context(result, scenario_a):
    context = advisor_context(result, ad_summary(scenario_a[0]))
    assert set(context) == {
        'ads', 'pnl', 'top_creators', 'losing_creators', 'top_products', 'unmapped_creators',
        'not_found_skus', 'period_days',
    }
    assert context['top_creators'][0]['key'] == 'koca'
    assert context['losing_creators'] == []
    assert context['period_days'] == 30


def test_financial_context_text(make_ads, make_inventory, settings):
    ads = make_ads([{'creator': 'koc_loss', 'cost': 300_000, 'gmv': 0}])
    inventory = make_inventory([{'sku': 'SKU-A', 'stock': 1200}, {'sku': 'SKU-B', 'stock': 3}])
    result = reconcile(ads, inventory=inventory, settings=settings)

    text = financial_context_text(result, inventory)
    assert '[CHIẾN LƯỢC XẢ KHO]' in text
    assert text.index('SKU-A') < text.index('SKU-B')
    assert 'Tồn kho: 1,200' in text
    assert '[TỐI ƯU LỢI NHUẬN THỰC]' in text
    assert 'KOC: koc_loss, Lỗ ròng: 300,000 đ' in text
    assert financial_context_text(reconcile(make_ads([{'cost': 0, 'gmv': 5}]), settings=settings)) == ''
