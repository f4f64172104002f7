import csv
import io
import re

import pandas as pd
from loguru import logger

from koc_pnl.config import get_settings
from koc_pnl.errors import MalformedFileError
from koc_pnl.parsing import (
    clean_id, clean_text, is_blank, normalize_phrase, parse_locale_number, ratio,
)

# ================= 1. 文件类型签名 & 列别名 =================
FILE_TYPE_KEYWORDS = {
    'ads': ['Chi phí', 'Doanh thu gộp', 'Tài khoản TikTok', 'Cost', 'GMV'],
    'orders': ['ID đơn hàng', 'Order ID', 'Tên người dùng nhà sáng tạo', 'Sku người bán', 'Seller SKU'],
    'inventory': ['Mã SKU', 'SKU', 'Toàn bộ kho khả dụng', 'Giá vốn'],
}

# Ordered: the first alias holding a non-empty value in a row wins
COLUMN_ALIASES = {
    'ads': {
        'campaign_name': ['Tên chiến dịch', 'Chiến dịch', 'Campaign name', 'Campaign'],
        'product_id': ['ID sản phẩm', 'Product ID'],
        'video_title': ['Tiêu đề video', 'Video title'],
        'video_id': ['ID video', 'Video ID'],
        'creator': ['Tài khoản TikTok', 'TikTok account', 'Creator username', 'Creator'],
        'creative_type': ['Loại nội dung sáng tạo', 'Creative type'],
        'cost': ['Chi phí', 'Cost'],
        'gross_revenue': ['Doanh thu gộp', 'Gross revenue', 'GMV'],
        'roi': ['ROI'],
        'impressions': ['Số lượt hiển thị quảng cáo sản phẩm', 'Số lượt hiển thị', 'Product ad impressions', 'Impressions'],
        'clicks': ['Số lượt nhấp vào quảng cáo sản phẩm', 'Số lượt nhấp', 'Product ad clicks', 'Clicks'],
        'ctr': ['Tỷ lệ nhấp vào quảng cáo sản phẩm', 'CTR', 'Product ad click rate'],
        'cvr': ['Tỷ lệ chuyển đổi quảng cáo', 'CVR', 'Ad conversion rate'],
        'orders': ['Đơn hàng (SKU)', 'SKU orders', 'Orders'],
        'cost_per_order': ['Chi phí cho mỗi đơn hàng', 'CPĐH', 'Cost per order'],
        'view_rate_2s': ['Tỷ lệ xem video quảng cáo trong 2 giây', '2-second ad video view rate'],
        'view_rate_6s': ['Tỷ lệ xem video quảng cáo trong 6 giây', '6-second ad video view rate'],
        'view_rate_25p': ['Tỷ lệ xem 25% thời lượng video quảng cáo', 'Ad video view rate at 25%'],
        'view_rate_50p': ['Tỷ lệ xem 50% thời lượng video quảng cáo', 'Ad video view rate at 50%'],
        'view_rate_75p': ['Tỷ lệ xem 75% thời lượng video quảng cáo', 'Ad video view rate at 75%'],
        'view_rate_100p': ['Tỷ lệ xem 100% thời lượng video quảng cáo', 'Ad video view rate at 100%'],
    },
    'orders': {
        'order_id': ['ID đơn hàng', 'Order ID'],
        'creator': ['Tên người dùng nhà sáng tạo', 'Creator Username', 'Creator name'],
        'seller_sku': ['Sku người bán', 'Seller SKU'],
        'product_id': ['ID sản phẩm', 'Product ID'],
        'product_name': ['Tên sản phẩm', 'Product Name'],
        'content_id': ['Id nội dung', 'Content ID', 'Video ID'],
        'revenue': ['Payment Amount', 'Số tiền thanh toán', 'Thanh toán'],
        'status': ['Trạng thái đơn hàng', 'Order Status'],
        'return_status': ['Trả hàng & hoàn tiền', 'Return & Refund', 'Refund status'],
        'commission': ['Thanh toán hoa hồng thực tế', 'Actual Commission Payment'],
        'quantity': ['Số lượng', 'Quantity'],
        'created_time': ['Thời gian tạo', 'Thời gian tạo đơn hàng', 'Created Time'],
    },
    'inventory': {
        'sku': ['Mã SKU', 'Seller SKU', 'SKU'],
        'stock': ['Toàn bộ kho khả dụng', 'Số lượng tồn kho', 'Tồn kho khả dụng', 'Available stock', 'Stock'],
        'cogs': ['Giá vốn', 'COGS', 'Unit cost', 'Cost price'],
        'name': ['Tên', 'Tên sản phẩm', 'Product name', 'Name'],
    },
}

REQUIRED_FIELDS = {
    'ads': ['cost', 'gross_revenue'],
    'orders': ['order_id', 'revenue'],
    'inventory': ['sku', 'cogs'],
}

ADS_NUMERIC = [
    'cost', 'gross_revenue', 'roi', 'impressions', 'clicks', 'ctr', 'cvr', 'orders', 'cost_per_order',
    'view_rate_2s', 'view_rate_6s', 'view_rate_25p', 'view_rate_50p', 'view_rate_75p', 'view_rate_100p',
]
ADS_COLUMNS = ['campaign_name', 'product_id', 'video_title', 'video_id', 'creator', 'creative_type'] + ADS_NUMERIC + ['cir', 'cpc']
ORDER_COLUMNS = list(COLUMN_ALIASES['orders'].keys())
INVENTORY_COLUMNS = list(COLUMN_ALIASES['inventory'].keys())

UNKNOWN_CREATOR = 'unknown'
ORGANIC_CREATOR = 'Organic/Khác'
UNAVAILABLE_MARKERS = {'-', 'không khả dụng'}
VALID_EXTS = ('.csv', '.xlsx', '.xls')


# ================= 2. 读取原始表 & 表头识别 =================
def read_raw_table(content, file_name):
    fname_lower = file_name.lower()
    if not fname_lower.endswith(VALID_EXTS):
        raise MalformedFileError(file_name, "Định dạng file không được hỗ trợ (chỉ .csv, .xlsx, .xls).")
    try:
        if fname_lower.endswith('.csv'):
            text = content.decode('utf-8-sig', errors='replace')
            rows = list(csv.reader(io.StringIO(text)))
            return pd.DataFrame(rows, dtype=object)
        return pd.read_excel(io.BytesIO(content), sheet_name=0, header=None, dtype=object)
    except MalformedFileError:
        raise
    except Exception as e:
        raise MalformedFileError(file_name, f"Không đọc được file ({e}).") from e


def detect_header_row(preview_rows, keywords, max_rows=20):
    targets = [normalize_phrase(k) for k in keywords]
    for i, row in enumerate(preview_rows[:max_rows]):
        cells = [normalize_phrase(c) for c in row if not is_blank(c)]
        if not cells:
            continue
        if any(t in cell for cell in cells for t in targets):
            return i
    return None


def header_names(cells):
    names = []
    seen = {}
    for i, cell in enumerate(cells):
        name = clean_text(cell) or f"Unnamed: {i}"
        if name in seen:
            seen[name] += 1
            name = f"{name}.{seen[name]}"
        else:
            seen[name] = 0
        names.append(name)
    return names


def load_table(content, file_name, file_type, settings=None):
    settings = settings or get_settings()
    raw = read_raw_table(content, file_name)
    preview = raw.head(settings.header_scan_rows).values.tolist()

    header_idx = detect_header_row(preview, FILE_TYPE_KEYWORDS[file_type], settings.header_scan_rows)
    if header_idx is None:
        first_row = [clean_text(c) for c in preview[0] if not is_blank(c)] if preview else []
        raise MalformedFileError(file_name, "Không tìm thấy dòng tiêu đề hợp lệ.", preview=first_row)

    frame = raw.iloc[header_idx + 1:].copy()
    frame.columns = header_names(raw.iloc[header_idx].tolist())
    if not frame.empty:
        blank_rows = frame.apply(lambda col: col.map(is_blank)).all(axis=1)
        frame = frame[~blank_rows]
    frame = frame.reset_index(drop=True)
    logger.info(f"{file_name}: header row {header_idx}, {len(frame)} data rows, columns={list(frame.columns)[:5]}")
    return frame


# ================= 3. 列映射 =================
def header_key(name):
    return re.sub(r'\s+', '', normalize_phrase(name))


def resolve_columns(columns, aliases):
    lookup = {}
    for col in columns:
        lookup.setdefault(header_key(col), col)
    resolved = {}
    for field, names in aliases.items():
        cols = []
        for alias in names:
            col = lookup.get(header_key(alias))
            if col is not None and col not in cols:
                cols.append(col)
        resolved[field] = cols
    return resolved


def first_non_empty(frame, cols):
    if not cols:
        return pd.Series([None] * len(frame), index=frame.index, dtype=object)
    result = frame[cols[0]].astype(object)
    for col in cols[1:]:
        missing = result.map(is_blank)
        result = result.where(~missing, frame[col])
    return result


def map_columns(frame, file_type, file_name=''):
    aliases = COLUMN_ALIASES[file_type]
    resolved = resolve_columns(frame.columns, aliases)

    required = REQUIRED_FIELDS[file_type]
    missing_required = [f for f in required if not resolved[f]]
    if missing_required:
        labels = [aliases[f][0] for f in missing_required]
        raise MalformedFileError(file_name, f"Thiếu cột bắt buộc: {labels}", preview=list(frame.columns))

    missing_optional = [f for f, cols in resolved.items() if not cols and f not in required]
    if missing_optional:
        logger.warning(f"{file_name}: optional columns not found, defaulting: {missing_optional}")

    mapped = pd.DataFrame({f: first_non_empty(frame, cols) for f, cols in resolved.items()}, index=frame.index)
    return mapped.reset_index(drop=True)


# ================= 4. 三类表解析 =================
def clean_creator(value):
    s = clean_text(value)
    if not s or normalize_phrase(s) in UNAVAILABLE_MARKERS:
        return UNKNOWN_CREATOR
    return s.lower()


def parse_ads(frame, file_name='ads'):
    df = map_columns(frame, 'ads', file_name)
    for col in ADS_NUMERIC:
        df[col] = df[col].map(parse_locale_number).astype(float)
    for col in ['campaign_name', 'video_title', 'creative_type']:
        df[col] = df[col].map(lambda v: clean_text(v, 'N/A'))
    df['product_id'] = df['product_id'].map(clean_id)
    df['video_id'] = df['video_id'].map(clean_id)
    df['creator'] = df['creator'].map(clean_creator)

    # Derived ratios when the export leaves them blank
    df['roi'] = df['roi'].where(df['roi'] != 0, ratio(df['gross_revenue'], df['cost']))
    df['cost_per_order'] = df['cost_per_order'].where(df['cost_per_order'] != 0, ratio(df['cost'], df['orders']))
    df['cir'] = ratio(df['cost'], df['gross_revenue'], 100)
    df['cpc'] = ratio(df['cost'], df['clicks'])
    return df[ADS_COLUMNS]


ORDER_DATE_FORMAT = '%d/%m/%Y %H:%M:%S'


def parse_order_dates(values):
    """Export format first, then ISO, then anything else read day-first."""
    dates = pd.to_datetime(values, format=ORDER_DATE_FORMAT, errors='coerce')
    for fmt, dayfirst in [('ISO8601', False), ('mixed', True)]:
        rest = dates.isna() & ~values.map(is_blank).astype(bool)
        if not rest.any():
            break
        dates[rest] = pd.to_datetime(values[rest], format=fmt, dayfirst=dayfirst, errors='coerce')
    return dates


def parse_orders(frame, file_name='orders'):
    df = map_columns(frame, 'orders', file_name)
    for col in ['order_id', 'seller_sku', 'product_id', 'content_id']:
        df[col] = df[col].map(clean_id)
    for col in ['product_name', 'status', 'return_status']:
        df[col] = df[col].map(clean_text)
    df['creator'] = df['creator'].map(lambda v: clean_text(v, ORGANIC_CREATOR))

    for col in ['revenue', 'commission', 'quantity']:
        df[col] = df[col].map(parse_locale_number).astype(float)
    df['quantity'] = df['quantity'].where(df['quantity'] > 0, 1.0)
    df['created_time'] = parse_order_dates(df['created_time'])
    return df[ORDER_COLUMNS]


def parse_inventory(frame, file_name='inventory'):
    df = map_columns(frame, 'inventory', file_name)
    df['sku'] = df['sku'].map(clean_id)
    df['name'] = df['name'].map(clean_text)
    for col in ['stock', 'cogs']:
        df[col] = df[col].map(parse_locale_number).astype(float)
    return df[INVENTORY_COLUMNS]


PARSERS = {'ads': parse_ads, 'orders': parse_orders, 'inventory': parse_inventory}


def load_file(content, file_name, file_type, settings=None):
    frame = load_table(content, file_name, file_type, settings)
    parsed = PARSERS[file_type](frame, file_name)
    logger.info(f"{file_name}: parsed {len(parsed)} {file_type} rows")
    return parsed


def empty_frame(file_type):
    # typed like a parsed file with no rows
    headers = [names[0] for names in COLUMN_ALIASES[file_type].values()]
    return PARSERS[file_type](pd.DataFrame(columns=headers), file_type)


# ================= 5. 文件名约定 =================
def identify_file_type(file_name, settings=None):
    settings = settings or get_settings()
    name = normalize_phrase(file_name)
    if normalize_phrase(settings.orders_file_marker) in name:
        return 'orders'
    if normalize_phrase(settings.inventory_file_marker) in name:
        return 'inventory'
    return 'ads'


def check_file_name(file_name, expected_type, settings=None):
    settings = settings or get_settings()
    if identify_file_type(file_name, settings) == expected_type:
        return
    if expected_type == 'orders':
        message = f"File Đơn hàng phải có tên chứa '{settings.orders_file_marker}'."
    elif expected_type == 'inventory':
        message = f"File Tồn kho phải có tên chứa '{settings.inventory_file_marker}'."
    else:
        message = "File quảng cáo không được mang tên của file Đơn hàng hoặc Tồn kho."
    raise MalformedFileError(file_name, message)
