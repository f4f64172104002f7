"""
File bytes -> parsed frames -> ad aggregates -> reconciliation, as one call.

A ``DatasetGeneration`` is everything the dashboard shows for one set of
uploads. ``ReconciliationSession`` only ever holds a complete generation or
nothing: a failed pass clears the previous one instead of mixing old and new
data.
"""
import hashlib
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd
from loguru import logger

from koc_pnl.ads import ad_summary, campaign_ad_stats
from koc_pnl.config import CostStructure, get_settings
from koc_pnl.errors import MissingPrerequisiteError, StorageQuotaExceeded
from koc_pnl.ingestion import ADS_COLUMNS, ADS_NUMERIC, check_file_name, empty_frame, load_file
from koc_pnl.reconcile import ReconciliationResult, reconcile


@dataclass(frozen=True)
class SourceFile:
    name: str
    content: bytes


@dataclass
class DatasetGeneration:
    fingerprint: str
    ads: pd.DataFrame
    orders: pd.DataFrame
    inventory: pd.DataFrame
    ad_summary: dict
    campaigns: pd.DataFrame
    result: ReconciliationResult
    cost_structure: CostStructure
    file_names: dict = field(default_factory=dict)
    from_cache: bool = False
    truncated: bool = False


def fingerprint(*contents):
    digest = hashlib.sha256()
    for content in contents:
        data = content or b''
        # length prefix keeps (ab, c) and (a, bc) apart
        digest.update(len(data).to_bytes(8, 'big'))
        digest.update(data)
    return digest.hexdigest()


def build_generation(ads_file, orders_file=None, inventory_file=None, cost_structure=None, settings=None):
    settings = settings or get_settings()
    if ads_file is None:
        raise MissingPrerequisiteError("Chưa có file quảng cáo (load ads first).")
    cost_structure = cost_structure or settings.default_cost_structure()

    check_file_name(ads_file.name, 'ads', settings)
    ads = load_file(ads_file.content, ads_file.name, 'ads', settings)
    if ads.empty:
        raise MissingPrerequisiteError(f"File quảng cáo {ads_file.name} không có dòng dữ liệu nào.")

    if orders_file is not None:
        check_file_name(orders_file.name, 'orders', settings)
        orders = load_file(orders_file.content, orders_file.name, 'orders', settings)
    else:
        orders = empty_frame('orders')

    if inventory_file is not None:
        check_file_name(inventory_file.name, 'inventory', settings)
        inventory = load_file(inventory_file.content, inventory_file.name, 'inventory', settings)
    else:
        inventory = empty_frame('inventory')

    files = (ads_file, orders_file, inventory_file)
    return assemble_generation(
        fingerprint(*(f.content if f else None for f in files)),
        ads, orders, inventory, cost_structure, settings,
        file_names={kind: f.name for kind, f in zip(('ads', 'orders', 'inventory'), files) if f is not None},
    )


def assemble_generation(key, ads, orders, inventory, cost_structure, settings, **extra):
    result = reconcile(ads, orders, inventory, cost_structure, settings)
    return DatasetGeneration(
        fingerprint=key,
        ads=ads,
        orders=orders,
        inventory=inventory,
        ad_summary=ad_summary(ads),
        campaigns=campaign_ad_stats(ads, settings),
        result=result,
        cost_structure=cost_structure,
        **extra,
    )


# ================= 本地缓存（尽力而为） =================
class SourceCache:
    """Keeps the first rows of the last parsed ads file on disk between sessions."""

    file_name = 'ads_cache.json'

    def __init__(self, cache_dir, row_limit=1000, max_bytes=5 * 1024 * 1024):
        self.path = Path(cache_dir) / self.file_name
        self.row_limit = row_limit
        self.max_bytes = max_bytes

    def save(self, source_name, ads):
        payload = {
            'file_name': source_name,
            'is_truncated': len(ads) > self.row_limit,
            'rows': ads.head(self.row_limit).to_dict('records'),
        }
        text = json.dumps(payload, ensure_ascii=False, default=str)
        size = len(text.encode('utf-8'))
        if size > self.max_bytes:
            raise StorageQuotaExceeded(f"Cache payload {size} bytes exceeds {self.max_bytes} bytes")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(text, encoding='utf-8')
        except OSError as e:
            raise StorageQuotaExceeded(f"Cannot write cache {self.path}: {e}") from e
        if payload['is_truncated']:
            logger.warning(f"{source_name} has {len(ads)} rows, cached only the first {self.row_limit}")

    def load(self):
        """(file name, ads frame, truncated flag) or None; a corrupt cache file is removed."""
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding='utf-8'))
            frame = pd.DataFrame(payload['rows'], columns=ADS_COLUMNS)
            numeric = ADS_NUMERIC + ['cir', 'cpc']
            frame[numeric] = frame[numeric].apply(pd.to_numeric, errors='coerce').fillna(0.0).astype(float)
            return payload['file_name'], frame, bool(payload.get('is_truncated', False))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache {self.path}: {e}")
            self.clear()
            return None

    def clear(self):
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Cannot remove cache {self.path}: {e}")


# ================= 会话：原子切换 =================
class ReconciliationSession:
    max_memo = 4

    def __init__(self, settings=None, cache: Optional[SourceCache] = None):
        self.settings = settings or get_settings()
        self.cache = cache
        self.generation: Optional[DatasetGeneration] = None
        self._memo = OrderedDict()

    @property
    def loaded(self):
        return self.generation is not None

    def run(self, ads_file, orders_file=None, inventory_file=None, cost_structure=None):
        cost_structure = cost_structure or self.settings.default_cost_structure()
        files = (ads_file, orders_file, inventory_file)
        memo_key = (
            fingerprint(*(f.content if f else None for f in files)),
            tuple(f.name if f else None for f in files),
            cost_structure.model_dump_json(),
        )

        if memo_key in self._memo:
            self._memo.move_to_end(memo_key)
            self.generation = self._memo[memo_key]
            logger.info(f"Reusing reconciliation {memo_key[0][:12]}")
            return self.generation

        try:
            generation = build_generation(ads_file, orders_file, inventory_file, cost_structure, self.settings)
        except Exception:
            self.reset()
            raise

        self.generation = generation
        self._memo[memo_key] = generation
        while len(self._memo) > self.max_memo:
            self._memo.popitem(last=False)
        self._cache_ads(generation)
        return generation

    def _cache_ads(self, generation):
        if self.cache is None:
            return
        try:
            self.cache.save(generation.file_names.get('ads', ''), generation.ads)
        except StorageQuotaExceeded as e:
            logger.warning(f"Ads data not cached, the dashboard keeps working without it: {e}")
            self.cache.clear()

    def restore(self, cost_structure=None):
        """Ads-only generation from the cached ads rows of a previous session, or None."""
        if self.cache is None:
            return None
        cached = self.cache.load()
        if cached is None:
            return None
        file_name, ads, truncated = cached
        if ads.empty:
            return None
        cost_structure = cost_structure or self.settings.default_cost_structure()
        self.generation = assemble_generation(
            f"cache:{file_name}", ads, empty_frame('orders'), empty_frame('inventory'), cost_structure, self.settings,
            file_names={'ads': file_name}, from_cache=True, truncated=truncated,
        )
        logger.info(f"Restored {len(ads)} cached ads rows from {file_name}")
        return self.generation

    def reset(self):
        self.generation = None
