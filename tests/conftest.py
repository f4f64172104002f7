"""
Shared fixtures: raw frames carrying the real Vietnamese export headers,
pushed through the same parsers the dashboard uses.
"""
import csv
import io
import itertools

import pandas as pd
import pytest

from koc_pnl.config import Settings
from koc_pnl.ingestion import parse_ads, parse_inventory, parse_orders


@pytest.fixture
def settings(tmp_path):
    return Settings(cache_dir=str(tmp_path / "cache"), log_dir=str(tmp_path / "logs"))


@pytest.fixture
def make_ads():
    def _make(rows):
        raw = pd.DataFrame([{
            'Tên chiến dịch': r.get('campaign', 'Camp A'),
            'ID sản phẩm': r.get('product_id', 'P1'),
            'Tiêu đề video': r.get('title', 'Video demo'),
            'ID video': r.get('video_id', 'V1'),
            'Tài khoản TikTok': r.get('creator', 'koc_A'),
            'Loại nội dung sáng tạo': r.get('type', 'Video'),
            'Chi phí': r.get('cost', 0),
            'Doanh thu gộp': r.get('gmv', 0),
            'ROI': r.get('roi', ''),
            'Số lượt hiển thị': r.get('impressions', 0),
            'Số lượt nhấp': r.get('clicks', 0),
            'Tỷ lệ chuyển đổi quảng cáo': r.get('cvr', 0),
            'Đơn hàng (SKU)': r.get('orders', 0),
        } for r in rows])
        return parse_ads(raw)
    return _make


@pytest.fixture
def make_orders():
    counter = itertools.count(1001)

    def _make(rows):
        raw = pd.DataFrame([{
            'ID đơn hàng': r.get('order_id', str(next(counter))),
            'Tên người dùng nhà sáng tạo': r.get('creator', 'Koc A '),
            'Sku người bán': r.get('sku', 'SKU-A'),
            'ID sản phẩm': r.get('product_id', 'P1'),
            'Tên sản phẩm': r.get('product_name', 'Kem chống nắng'),
            'Id nội dung': r.get('content_id', 'V1'),
            'Payment Amount': r.get('revenue', 0),
            'Trạng thái đơn hàng': r.get('status', 'Đã giao'),
            'Trả hàng & hoàn tiền': r.get('return_status', ''),
            'Thanh toán hoa hồng thực tế': r.get('commission', 0),
            'Số lượng': r.get('quantity', 1),
            'Thời gian tạo': r.get('created', ''),
        } for r in rows])
        return parse_orders(raw)
    return _make


@pytest.fixture
def make_inventory():
    def _make(rows):
        raw = pd.DataFrame([{
            'Mã SKU': r.get('sku', 'SKU-A'),
            'Toàn bộ kho khả dụng': r.get('stock', 0),
            'Giá vốn': r.get('cogs', 0),
            'Tên': r.get('name', ''),
        } for r in rows])
        return parse_inventory(raw)
    return _make


@pytest.fixture
def scenario_a(make_ads, make_orders, make_inventory):
    """koc_A spends 500k on ads; 10 delivered orders of 200k with 20k commission and 80k unit cost."""
    ads = make_ads([{'creator': 'koc_A', 'cost': 500_000, 'gmv': 2_500_000, 'clicks': 100, 'impressions': 5_000}])
    orders = make_orders([{'revenue': 200_000, 'commission': 20_000} for _ in range(10)])
    inventory = make_inventory([{'sku': 'SKU-A', 'stock': 100, 'cogs': 80_000, 'name': 'Kem chống nắng'}])
    return ads, orders, inventory


def csv_bytes(header, rows, preamble=()):
    buf = io.StringIO()
    writer = csv.writer(buf)
    for line in preamble:
        writer.writerow(line)
    writer.writerow(header)
    writer.writerows(rows)
    return buf.getvalue().encode('utf-8-sig')


@pytest.fixture
def export_files():
    """Raw bytes of the three exports, with the report preamble TikTok puts above the header."""
    ads = csv_bytes(
        ['Tên chiến dịch', 'ID sản phẩm', 'ID video', 'Tài khoản TikTok', 'Loại nội dung sáng tạo', 'Chi phí', 'Doanh thu gộp'],
        [
            ['Camp A', '1729000000001', 'V1', 'koc_A', 'Video', '500.000', '2.500.000'],
            ['Camp A', '1729000000001', '', '-', 'Thẻ sản phẩm', '100.000', '150.000'],
        ],
        preamble=[['Báo cáo quảng cáo sản phẩm'], ['Khoảng thời gian: 2024-01-01 ~ 2024-01-30']],
    )
    orders = csv_bytes(
        ['ID đơn hàng', 'Tên người dùng nhà sáng tạo', 'Sku người bán', 'ID sản phẩm', 'Tên sản phẩm',
         'Id nội dung', 'Payment Amount', 'Trạng thái đơn hàng', 'Thanh toán hoa hồng thực tế', 'Số lượng'],
        [
            ['5001', 'Koc A', 'SKU-A', '1729000000001', 'Kem chống nắng', 'V1', '200.000', 'Đã giao', '20.000', '1'],
            ['5002', 'Koc A', 'SKU-A', '1729000000001', 'Kem chống nắng', 'V1', '200.000', 'Đã hủy', '0', '1'],
        ],
    )
    inventory = csv_bytes(
        ['Mã SKU', 'Tên', 'Toàn bộ kho khả dụng', 'Giá vốn'],
        [['SKU-A', 'Kem chống nắng', '50', '80.000']],
    )
    return ads, orders, inventory
