import math
import re
import unicodedata

import numpy as np
import pandas as pd

ZERO_WIDTH_RE = re.compile(r'[\u200b\ufeff]')
CURRENCY_RE = re.compile(r'đ|₫|vnd|\$|%|\s', re.IGNORECASE)
NON_ALNUM_RE = re.compile(r'[^a-z0-9]')
WHITESPACE_RE = re.compile(r'\s+')

PLACEHOLDERS = {'', '-', '--', 'n/a', 'nan', 'none', '<na>'}
VANITY_SUFFIXES = ('review', 'official', 'store', 'channel')
UNKNOWN_IDENTITY = 'unknown'


# ================= 1. 数字解析 =================
def parse_locale_number(value) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float, np.integer, np.floating)):
        num = float(value)
        return num if math.isfinite(num) else 0.0

    s = ZERO_WIDTH_RE.sub('', str(value)).strip()
    if s.lower() in PLACEHOLDERS:
        return 0.0
    s = CURRENCY_RE.sub('', s)
    if not s:
        return 0.0

    has_comma = ',' in s
    has_dot = '.' in s
    if has_comma and has_dot:
        # the separator that comes last is the decimal one
        if s.rfind(',') > s.rfind('.'):
            s = s.replace('.', '').replace(',', '.')
        else:
            s = s.replace(',', '')
    elif has_comma:
        parts = s.split(',')
        if len(parts) > 2 or len(parts[1]) == 3:
            s = s.replace(',', '')
        else:
            s = s.replace(',', '.')
    elif has_dot:
        parts = s.split('.')
        if len(parts) > 2 or len(parts[1]) == 3:
            s = s.replace('.', '')

    try:
        num = float(s)
    except ValueError:
        return 0.0
    return num if math.isfinite(num) else 0.0


def safe_div(a, b, default=0.0):
    if b is None or b == 0 or pd.isna(b):
        return default
    return a / b


def ratio(num, den, scale=1.0):
    # vectorized safe_div over Series, 0 where the denominator is 0
    return (num * scale / den.where(den != 0)).fillna(0.0)


# ================= 2. 身份归一化 =================
def strip_diacritics(value):
    s = unicodedata.normalize('NFD', str(value).lower())
    s = ''.join(ch for ch in s if not unicodedata.combining(ch))
    return s.replace('đ', 'd')


def compact_text(value):
    return NON_ALNUM_RE.sub('', strip_diacritics(value))


def normalize_identity(value) -> str:
    """Join key for creator handles spelled differently by the ad and commerce platforms."""
    if is_blank(value):
        return UNKNOWN_IDENTITY
    s = compact_text(value)

    stripped = True
    while stripped and s:
        stripped = False
        for suffix in VANITY_SUFFIXES:
            if s.endswith(suffix):
                s = s[:-len(suffix)]
                stripped = True
    return s or UNKNOWN_IDENTITY


def normalize_name(value):
    if is_blank(value):
        return ''
    return WHITESPACE_RE.sub(' ', strip_diacritics(value)).strip()


def normalize_sku(value):
    if is_blank(value):
        return ''
    return ZERO_WIDTH_RE.sub('', str(value)).strip().lower()


def normalize_phrase(value):
    # NFC so composed/decomposed Vietnamese text compares equal
    if is_blank(value):
        return ''
    return unicodedata.normalize('NFC', str(value)).strip().lower()


# ================= 3. 文本 / ID 清洗 =================
def is_blank(value):
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def clean_text(value, default=''):
    if is_blank(value):
        return default
    return ZERO_WIDTH_RE.sub('', str(value)).strip()


def clean_id(value):
    if is_blank(value):
        return ''
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)):
        return str(int(value)) if float(value).is_integer() else str(value)
    s = clean_text(value)
    if re.fullmatch(r'\d+(\.\d+)?[eE]\+?\d+', s):
        return str(int(float(s)))
    if s.endswith('.0') and s[:-2].isdigit():
        return s[:-2]
    return s
