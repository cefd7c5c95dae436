"""
Batch driver for product investigation + HS classification.

Each product row goes through two external collaborators:
    1. investigate(product) → research payload merged with score_web_evidence()
    2. classify(product, investigation) → HS decision (e.g. determine_hs_code)

Consistency:
    Products that differ only by size / colour / quantity share one
    (investigation, classification) pair within a batch. The key is
    normalized maker + "::" + canonicalized product name, and the cache is
    cleared at the start of every batch. It is never persisted.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, Hashable, List, Optional, Tuple

import pandas as pd

from hs_matcher import HS_CODE_UNKNOWN, canonicalize_product_name, normalize_for_match
from web_evidence import format_evidence_flags

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
CACHE_KEY_SEPARATOR = "::"
KEYWORD_DEBUG_LIMIT = 25
EXPORT_SOURCE_LIMIT = 3

RESULT_COLUMNS = [
    'index', 'jan', 'product_name', 'maker',
    'web_match_score', 'needs_review', 'web_match_reason', 'web_hit_risk', 'web_evidence',
    'hs_code', 'hs_description', 'reason', 'invoice_description', 'confidence',
    'hs_candidate_count', 'hs_candidate_codes', 'hs_keyword_debug',
    'cache_hit', 'error', 'investigation', 'timestamp',
]


# ---------------------------------------------------------------------------
# Consistency cache
# ---------------------------------------------------------------------------

def make_cache_key(maker: str, product_name: str) -> str:
    """Batch consistency key: normalized maker :: canonical product name."""
    return f"{normalize_for_match(maker)}{CACHE_KEY_SEPARATOR}{canonicalize_product_name(product_name)}"


class ConsistencyCache:
    """
    Batch-scoped get-or-compute cache.

    Concurrent callers asking for the same key wait on a per-key lock, so the
    expensive research call runs once per key. A computation that raises is
    not stored.
    """

    def __init__(self):
        self._values: Dict[Hashable, object] = {}
        self._key_locks: Dict[Hashable, threading.Lock] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get_or_compute(self, key: Hashable, compute: Callable[[], object]) -> Tuple[object, bool]:
        """Return (value, was_cached)."""
        with self._lock_for(key):
            with self._lock:
                if key in self._values:
                    self.hits += 1
                    return self._values[key], True
            value = compute()
            with self._lock:
                self._values[key] = value
                self.misses += 1
            return value, False

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._key_locks.clear()
            self.hits = 0
            self.misses = 0

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------

def build_result_record(
    product: Dict,
    investigation: Optional[Dict],
    hs_result: Optional[Dict],
    cache_hit: bool = False,
    error: str = '',
) -> Dict:
    """Flatten one product's investigation + HS decision into a result row."""
    investigation = investigation or {}
    hs_result = hs_result or {}
    candidates = hs_result.get('candidates') or []
    keywords = hs_result.get('keywords') or []

    return {
        'index': product.get('index'),
        'jan': product.get('jan', ''),
        'product_name': product.get('product_name', ''),
        'maker': product.get('maker', ''),
        'web_match_score': investigation.get('web_match_score'),
        'needs_review': bool(investigation.get('needs_review', False)),
        'web_match_reason': investigation.get('web_match_reason', ''),
        'web_hit_risk': investigation.get('web_hit_risk', ''),
        'web_evidence': investigation.get('web_evidence'),
        'hs_code': hs_result.get('hs_code', HS_CODE_UNKNOWN),
        'hs_description': hs_result.get('hs_description', ''),
        'reason': hs_result.get('reason', ''),
        'invoice_description': hs_result.get('invoice_description', ''),
        'confidence': hs_result.get('confidence', ''),
        'hs_candidate_count': len(candidates) if 'candidates' in hs_result else None,
        'hs_candidate_codes': ', '.join(c.get('code', '') for c in candidates),
        'hs_keyword_debug': ', '.join(keywords[:KEYWORD_DEBUG_LIMIT]),
        'cache_hit': cache_hit,
        'error': error or hs_result.get('error', '') or investigation.get('error', ''),
        'investigation': investigation,
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }


def _product_from_row(row: pd.Series, idx, maker_col: str, name_col: str, jan_col: Optional[str]) -> Dict:
    def _cell(col):
        if not col or col not in row.index:
            return ''
        value = row[col]
        return '' if pd.isna(value) else str(value).strip()

    return {
        'index': idx,
        'jan': _cell(jan_col),
        'product_name': _cell(name_col),
        'maker': _cell(maker_col),
    }


# ---------------------------------------------------------------------------
# Batch driver
# ---------------------------------------------------------------------------

def run_batch(
    df_products: pd.DataFrame,
    investigate: Callable[[Dict], Dict],
    classify: Callable[[Dict, Dict], Dict],
    maker_col: str = 'maker',
    name_col: str = 'product_name',
    jan_col: Optional[str] = 'jan',
    progress_callback: Optional[Callable[[int, int], None]] = None,
    cache: Optional[ConsistencyCache] = None,
    max_workers: int = 1,
) -> pd.DataFrame:
    """
    Investigate and classify every product row of a batch.

    Args:
        df_products: product master rows (maker, product name, optional JAN)
        investigate: callable(product) → investigation dict (research payload
            merged with score_web_evidence output)
        classify: callable(product, investigation) → HS decision dict
        maker_col / name_col / jan_col: column names in df_products
        progress_callback: optional callable(current, total) for UI progress
        cache: consistency cache to use; cleared before the batch starts
        max_workers: > 1 runs items on a thread pool (same-key items still
            compute once)

    Returns:
        DataFrame with one result row per input row, in input order
        (see RESULT_COLUMNS). A failing collaborator only affects its own row,
        which gets an 'error' value and HS code UNKNOWN.
    """
    cache = cache if cache is not None else ConsistencyCache()
    cache.clear()

    df = df_products.copy()
    df.columns = [str(c).strip() for c in df.columns]
    products = [
        _product_from_row(row, idx, maker_col, name_col, jan_col)
        for idx, row in df.iterrows()
    ]
    total = len(products)

    def _compute(product: Dict) -> Tuple[Dict, Dict]:
        investigation = investigate(product)
        hs_result = classify(product, investigation)
        return investigation, hs_result

    def _process(product: Dict) -> Dict:
        key = make_cache_key(product['maker'], product['product_name'])
        try:
            (investigation, hs_result), cached = cache.get_or_compute(key, lambda: _compute(product))
        except Exception as e:
            logger.exception("Processing failed for %r", product['product_name'])
            return build_result_record(product, None, None, error=str(e) or type(e).__name__)
        if cached:
            logger.info("Reusing cached result for %s", key)
        return build_result_record(product, investigation, hs_result, cache_hit=cached)

    results: List[Dict] = []
    if max_workers and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for record in executor.map(_process, products):
                results.append(record)
                if progress_callback:
                    progress_callback(len(results), total)
    else:
        for product in products:
            results.append(_process(product))
            if progress_callback:
                progress_callback(len(results), total)

    logger.info("Batch complete: %d items, %d reused from cache", total, cache.hits)
    return pd.DataFrame(results, columns=RESULT_COLUMNS)


# ---------------------------------------------------------------------------
# Export + review metrics
# ---------------------------------------------------------------------------

def build_export_frame(df_results: pd.DataFrame) -> pd.DataFrame:
    """Reviewer-facing columns for export (the caller writes the file)."""
    rows = []
    for _, r in df_results.iterrows():
        investigation = r.get('investigation') if isinstance(r.get('investigation'), dict) else {}
        sources = (investigation.get('web_sources') or [])[:EXPORT_SOURCE_LIMIT]
        score = r.get('web_match_score')
        rows.append({
            'JAN': r.get('jan', ''),
            'Product Name': r.get('product_name', ''),
            'Maker': r.get('maker', ''),
            'WebMatchScore': '' if score is None or pd.isna(score) else int(score),
            'Needs Review': 'REVIEW' if r.get('needs_review') else '',
            'WebMatchReason': r.get('web_match_reason', ''),
            'WebHitRisk': r.get('web_hit_risk', ''),
            'Web Sources (top 3)': ' | '.join(s.get('title') or s.get('uri', '') for s in sources),
            'Web Source URLs (top 3)': ' | '.join(s.get('uri', '') for s in sources),
            'Evidence Flags': format_evidence_flags(r.get('web_evidence')),
            'HS Code': r.get('hs_code', ''),
            'HS Description': r.get('hs_description', ''),
            'Reason': r.get('reason', ''),
            'Invoice Description (EN)': r.get('invoice_description', ''),
            'Confidence': r.get('confidence', ''),
            'HS Candidates': '' if r.get('hs_candidate_count') is None or pd.isna(r.get('hs_candidate_count'))
                             else int(r.get('hs_candidate_count')),
            'HS Candidate Codes': r.get('hs_candidate_codes', ''),
            'HS Keywords (first 25)': r.get('hs_keyword_debug', ''),
            'Investigated At': r.get('timestamp', ''),
        })
    return pd.DataFrame(rows)


def compute_review_metrics(df_results: pd.DataFrame) -> Dict[str, object]:
    """
    Summary metrics for a completed batch.

    Returns a dict with:
        total_rows, needs_review_count / needs_review_rate, unevaluable_count
        (no evidence sources), cache_hit_count, error_count,
        avg_web_match_score (evaluable rows only), risk_breakdown
    """
    total = len(df_results)
    if total == 0:
        return {'total_rows': 0, 'needs_review_count': 0, 'needs_review_rate': 0.0,
                'unevaluable_count': 0, 'cache_hit_count': 0, 'error_count': 0,
                'avg_web_match_score': 0.0, 'risk_breakdown': {}}

    review = df_results[df_results['needs_review'].fillna(False).astype(bool)]
    scores = pd.to_numeric(df_results['web_match_score'], errors='coerce')
    evaluable = scores.dropna()
    errors = df_results['error'].fillna('').astype(str).str.len() > 0

    risk_breakdown = {}
    if 'web_hit_risk' in df_results.columns:
        risk = df_results['web_hit_risk'].fillna('').astype(str)
        risk_breakdown = risk[risk != ''].value_counts().to_dict()

    return {
        'total_rows': total,
        'needs_review_count': len(review),
        'needs_review_rate': round(len(review) / total * 100, 1),
        'unevaluable_count': int(scores.isna().sum() - errors[scores.isna()].sum()),
        'cache_hit_count': int(df_results['cache_hit'].fillna(False).astype(bool).sum()),
        'error_count': int(errors.sum()),
        'avg_web_match_score': round(float(evaluable.mean()), 2) if len(evaluable) > 0 else 0.0,
        'risk_breakdown': risk_breakdown,
    }
