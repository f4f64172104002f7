"""
Tests for ad aggregation per creator, per product and per campaign.
"""
import pytest

from koc_pnl.ads import ad_summary, campaign_ad_stats, creator_ad_stats, product_ad_stats, video_rows


@pytest.fixture
def ads(make_ads):
    return make_ads([
        {'creator': 'Nguyễn Văn A Official', 'campaign': 'Camp A', 'product_id': 'P1', 'video_id': 'V1',
         'cost': 100, 'gmv': 500, 'clicks': 100, 'cvr': 2, 'impressions': 1000, 'orders': 5, 'title': 'Review kem'},
        {'creator': 'nguyenvana', 'campaign': 'Camp B', 'product_id': 'P2', 'video_id': 'V2',
         'cost': 100, 'gmv': 300, 'clicks': 300, 'cvr': 4, 'impressions': 3000, 'orders': 3, 'title': 'Unbox son'},
        {'creator': 'koc_b', 'campaign': 'Camp A', 'product_id': 'P1', 'video_id': 'V3',
         'cost': 50, 'gmv': 50, 'clicks': 10, 'impressions': 500},
        {'creator': '-', 'campaign': 'Camp A', 'product_id': 'P1', 'video_id': '', 'type': 'Thẻ sản phẩm',
         'cost': 200, 'gmv': 900},
    ])


class TestCreatorAdStats:
    """Only video creatives with a known account count toward creators."""

    def test_spellings_merge_into_one_key(self, ads):
        stats = creator_ad_stats(ads).set_index('key')
        assert set(stats.index) == {'nguyenvana', 'kocb'}

        a = stats.loc['nguyenvana']
        assert a['name'] == 'nguyễn văn a official'
        assert a['cost'] == 200
        assert a['gross_revenue'] == 800
        assert a['video_count'] == 2
        assert a['product_count'] == 2
        # roi 5.0 and 3.0, only the first is above 4
        assert a['effective_video_count'] == 1
        assert a['avg_roi'] == pytest.approx(4.0)
        assert a['avg_cir'] == pytest.approx(25.0)
        assert a['avg_cpc'] == pytest.approx(0.5)
        assert a['avg_ctr'] == pytest.approx(10.0)

    def test_cvr_weighted_by_clicks(self, ads):
        stats = creator_ad_stats(ads).set_index('key')
        assert stats.loc['nguyenvana', 'avg_cvr'] == pytest.approx(3.5)

    def test_top_product_by_revenue(self, ads):
        stats = creator_ad_stats(ads).set_index('key')
        assert stats.loc['nguyenvana', 'top_product'] == 'Camp A'
        assert stats.loc['nguyenvana', 'top_product_gmv'] == 500

    def test_no_video_rows(self, make_ads):
        ads = make_ads([{'creator': '-', 'type': 'Thẻ sản phẩm', 'cost': 1, 'gmv': 2}])
        assert video_rows(ads).empty
        assert creator_ad_stats(ads).empty


def test_product_stats_include_non_video_rows(ads):
    stats = product_ad_stats(ads).set_index('key')
    assert stats.loc['P1', 'cost'] == 350
    assert stats.loc['P1', 'gross_revenue'] == 1450
    assert stats.loc['P1', 'name'] == 'Camp A'
    assert stats.loc['P2', 'cost'] == 100


def test_campaign_stats(ads):
    camps = campaign_ad_stats(ads)
    assert camps['campaign_name'].tolist() == ['Camp A', 'Camp B']

    a = camps.iloc[0]
    assert a['gross_revenue'] == 1450
    assert a['video_count'] == 2
    assert a['creator_count'] == 2
    assert a['effective_video_count'] == 1
    assert a['top_creator'] == 'nguyễn văn a official'
    assert a['top_creator_gmv'] == 500
    assert a['top_video_title'] == 'Review kem'
    assert a['top_video_roi'] == pytest.approx(5.0)


def test_ad_summary(ads):
    summary = ad_summary(ads, top_n=1)
    assert summary['total_cost'] == 450
    assert summary['total_gmv'] == 1750
    assert summary['avg_roi'] == pytest.approx(1750 / 450)
    assert summary['total_clicks'] == 410
    assert summary['total_kocs'] == 2
    assert summary['total_videos'] == 3
    assert summary['top_products'] == [{'product_id': 'P1', 'gmv': 1450.0}]


def test_ad_summary_empty():
    summary = ad_summary(None)
    assert summary['total_gmv'] == 0.0
    assert summary['avg_roi'] == 0.0
    assert summary['top_products'] == []
