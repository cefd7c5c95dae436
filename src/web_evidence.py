"""
Web evidence scoring for researched products.

The research step returns a short, ranked list of web sources (title + URI).
This module decides whether those sources actually describe the maker/product
being classified, or a look-alike such as a place, a tourist spot or an
encyclopedia topic with the same name.

Score (0-100), summed over the first 5 sources with rank weight (N - idx) / N:
    - +50 if any maker token appears in the source
    - +20 per product token found, capped at +40
    - -25 if the source contains a tourism / encyclopedia word

Risk Levels:
    - none:      no sources, nothing to evaluate (score is None, not 0)
    - very_high: 3+ distinctive product tokens, none found, no marketplace domain
    - high:      maker required but not found
    - medium:    score below match_threshold
    - low:       otherwise

Review Flag:
    needs_review is deliberately conservative. It needs enough sources, a strong
    product mismatch AND (by default) both a negative/non-product signal and a
    low score. A single weak signal must not push whole batches into review.

The point weights and the linear rank decay are empirical values kept for
compatibility with existing results. They are tuning knobs rather than a
derived formula.
"""

import logging
import math
import os
from dataclasses import dataclass, fields
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from hs_matcher import (
    filter_distinctive_tokens,
    normalize_for_match,
    strip_maker_noise,
    tokenize_for_match,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MAX_SOURCES = 5               # Only the top-ranked sources are considered
DOMAIN_CHECK_SOURCES = 3      # Domain checks look at the top 3 only
MAX_REASONS = 2
EVIDENCE_TOKEN_PREVIEW = 10

MAKER_HIT_POINTS = 50
PRODUCT_HIT_POINTS = 20
PRODUCT_POINTS_CAP = 40
NEGATIVE_HIT_PENALTY = -25

RISK_NONE = "none"
RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
RISK_VERY_HIGH = "very_high"

REASON_NO_SOURCES = "no evidence sources"
REASON_MAKER_MISSING = "maker not found in evidence"
REASON_PRODUCT_MISMATCH = "product's distinctive terms absent from evidence"
REASON_NEGATIVE_SOURCES = "tourism/place-oriented sources ranked high"
REASON_CONSISTENT = "evidence broadly consistent"
REASON_SEPARATOR = " / "


# ---------------------------------------------------------------------------
# Vocabulary tables
# ---------------------------------------------------------------------------

# Words typical of travel / encyclopedia pages rather than product pages
NEGATIVE_SIGNAL_TOKENS: Tuple[str, ...] = (
    'visit', 'tourism', 'travel', 'guide', 'hotel', 'flights', 'wikipedia',
    'britannica', 'history', 'map', 'weather', 'city', 'town', 'beach',
)

NON_PRODUCT_DOMAINS: Tuple[str, ...] = (
    'wikipedia.org',
    'wikidata.org',
    'britannica.com',
    'openstreetmap.org',
    'tenki.jp',
    'weather.com',
)

# Marketplaces: a hit here makes even a niche product credible
DEFAULT_PRODUCT_DOMAINS: Tuple[str, ...] = (
    'rakuten.co.jp', 'amazon.co.jp', 'yahoo.co.jp', 'thebase.in',
    'stores.jp', 'minne.com', 'creema.jp', 'mercari.com',
)

# Legal-entity fragments left over after strip_maker_noise()
MAKER_STOPWORDS = frozenset({
    '株', '有', '会社', 'co', 'inc', 'ltd', 'llc', 'corp', 'corporation', 'company',
})


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_INT_SETTINGS = {
    'WEB_MATCH_THRESHOLD': 'match_threshold',
    'WEB_MATCH_MIN_SOURCES_FOR_REVIEW': 'min_sources_for_review',
    'WEB_MATCH_REVIEW_LOW_SCORE': 'review_low_score',
    'WEB_MATCH_MIN_DISTINCTIVE_TOKENS': 'min_distinctive_tokens',
    'WEB_MATCH_NEGATIVE_THRESHOLD': 'negative_threshold',
}
_BOOL_SETTINGS = {
    'WEB_MATCH_REQUIRE_MAKER': 'require_maker',
    'WEB_MATCH_REQUIRE_NEGATIVE_FOR_REVIEW': 'require_negative_for_review',
}
_INT_FIELDS = frozenset(_INT_SETTINGS.values())
_BOOL_FIELDS = frozenset(_BOOL_SETTINGS.values())
_TRUE_VALUES = {'true', '1', 'yes', 'on'}
_FALSE_VALUES = {'false', '0', 'no', 'off'}


def _parse_int(name: str, raw, default: int) -> int:
    value = None
    if isinstance(raw, float):
        value = raw
    elif raw is not None and not isinstance(raw, bool):
        try:
            value = float(str(raw).strip())
        except ValueError:
            value = None
    if value is None or not math.isfinite(value) or value < 0:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    return int(value)


def _parse_bool(name: str, raw, default: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    value = str(raw).strip().lower() if raw is not None else ''
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning("Invalid %s=%r, using default %s", name, raw, default)
    return default


def _parse_domains(name: str, raw, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if isinstance(raw, str):
        items = raw.split(',')
    elif isinstance(raw, (list, tuple)):
        items = raw
    elif isinstance(raw, (set, frozenset)):
        items = sorted(str(d) for d in raw)
    else:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default
    return tuple(str(d).strip().lower() for d in items if d is not None and str(d).strip())


@dataclass(frozen=True)
class EvidenceConfig:
    """
    Evidence thresholds.

    Unusable values (None, non-numeric or negative thresholds, flags that are
    not booleans, a domain list that is not a list of hostnames) are replaced
    by the field default with a warning, so scoring never fails on config.
    A comma-separated string is accepted for product_domains.
    """
    match_threshold: int = 60
    require_maker: bool = True
    min_sources_for_review: int = 3
    review_low_score: int = 10
    min_distinctive_tokens: int = 3
    negative_threshold: int = 2
    require_negative_for_review: bool = True
    product_domains: Tuple[str, ...] = DEFAULT_PRODUCT_DOMAINS

    def __post_init__(self):
        for f in fields(self):
            raw = getattr(self, f.name)
            if f.name in _INT_FIELDS:
                value = _parse_int(f.name, raw, f.default)
            elif f.name in _BOOL_FIELDS:
                value = _parse_bool(f.name, raw, f.default)
            else:
                value = _parse_domains(f.name, raw, f.default)
            object.__setattr__(self, f.name, value)


DEFAULT_CONFIG = EvidenceConfig()


def load_evidence_config(env: Optional[Mapping[str, str]] = None) -> EvidenceConfig:
    """
    Build an EvidenceConfig from WEB_MATCH_* settings.

    Reads os.environ unless a mapping is given. Missing or empty values keep
    the defaults; unparsable values log a warning and keep the defaults.
    WEB_MATCH_PRODUCT_DOMAINS is a comma-separated hostname list.
    """
    env = os.environ if env is None else env
    values = {}

    for name, field in _INT_SETTINGS.items():
        raw = env.get(name)
        if raw is not None and str(raw).strip():
            values[field] = _parse_int(name, str(raw), getattr(DEFAULT_CONFIG, field))

    for name, field in _BOOL_SETTINGS.items():
        raw = env.get(name)
        if raw is not None and str(raw).strip():
            values[field] = _parse_bool(name, str(raw), getattr(DEFAULT_CONFIG, field))

    raw_domains = env.get('WEB_MATCH_PRODUCT_DOMAINS')
    if raw_domains is not None and str(raw_domains).strip():
        domains = tuple(d.strip().lower() for d in str(raw_domains).split(',') if d.strip())
        if domains:
            values['product_domains'] = domains

    return EvidenceConfig(**values)


# ---------------------------------------------------------------------------
# Source extraction
# ---------------------------------------------------------------------------

def extract_hostname(uri: str) -> str:
    """Lowercase hostname of a URI, or "" when it cannot be parsed."""
    if not isinstance(uri, str) or not uri:
        return ''
    try:
        return (urlparse(uri.strip()).hostname or '').lower()
    except ValueError:
        return ''


def extract_web_sources(chunks: Optional[Iterable]) -> List[Dict[str, str]]:
    """
    Normalize research sources into {title, uri, hostname} dicts.

    Accepts plain {title, uri} dicts or grounding chunks shaped like
    {"web": {"title": ..., "uri": ...}}. Items with neither a title nor a URI
    are skipped; only the first MAX_SOURCES are kept, in the given order.
    """
    sources = []
    for chunk in chunks or []:
        if not isinstance(chunk, Mapping):
            continue
        web = chunk.get('web', chunk)
        if not isinstance(web, Mapping):
            continue
        title = str(web.get('title') or '')
        uri = str(web.get('uri') or '')
        if not title and not uri:
            continue
        sources.append({'title': title, 'uri': uri, 'hostname': extract_hostname(uri)})
        if len(sources) >= MAX_SOURCES:
            break
    return sources


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def build_maker_tokens(maker: str) -> List[str]:
    """Maker tokens with and without legal-entity noise, minus stopwords."""
    raw = tokenize_for_match(maker) + tokenize_for_match(strip_maker_noise(maker))
    return [t for t in dict.fromkeys(raw) if t not in MAKER_STOPWORDS]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _domain_hit(sources: List[Dict[str, str]], domains: Iterable[str]) -> bool:
    domains = [d for d in domains if d]
    return any(
        d in (s.get('hostname') or '')
        for s in sources[:DOMAIN_CHECK_SOURCES]
        for d in domains
    )


def _unevaluable_result(maker_tokens: List[str], product_tokens: List[str],
                        distinctive_tokens: List[str]) -> Dict:
    return {
        'web_match_score': None,
        'needs_review': False,
        'web_match_reasons': [REASON_NO_SOURCES],
        'web_match_reason': REASON_NO_SOURCES,
        'web_sources': [],
        'web_hit_risk': RISK_NONE,
        'web_evidence': {
            'sources_count': 0,
            'maker_found': len(maker_tokens) == 0,
            'product_found': len(product_tokens) == 0,
            'negative_hit': False,
            'negative_hit_count': 0,
            'product_domain_hit': False,
            'non_product_domain_hit': False,
            'maker_hits_total': 0,
            'product_hits_total': 0,
            'distinctive_token_count': len(distinctive_tokens),
            'distinctive_tokens': distinctive_tokens[:EVIDENCE_TOKEN_PREVIEW],
            'missing_distinctive_tokens': distinctive_tokens[:EVIDENCE_TOKEN_PREVIEW],
        },
    }


def score_web_evidence(
    maker: Optional[str],
    product_name: Optional[str],
    sources: Optional[Iterable],
    config: Optional[EvidenceConfig] = None,
) -> Dict:
    """
    Score how well web sources corroborate a maker/product pair.

    Args:
        maker: maker name (may be empty; then the maker check passes)
        product_name: product name as listed in the product master
        sources: ranked research sources, {title, uri} dicts or grounding chunks
        config: thresholds, DEFAULT_CONFIG when omitted

    Returns:
        dict with web_match_score (int 0-100, or None when there are no
        sources), needs_review, web_match_reasons, web_match_reason,
        web_sources, web_hit_risk, web_evidence (metrics).
    """
    config = config if isinstance(config, EvidenceConfig) else DEFAULT_CONFIG

    maker_tokens = build_maker_tokens(maker)
    product_tokens = tokenize_for_match(product_name)
    distinctive_tokens = filter_distinctive_tokens(product_tokens)

    considered = extract_web_sources(sources)
    if not considered:
        return _unevaluable_result(maker_tokens, product_tokens, distinctive_tokens)

    score = 0.0
    maker_found = len(maker_tokens) == 0
    product_found = len(product_tokens) == 0
    negative_hit_count = 0
    maker_hits_total = 0
    product_hits_total = 0
    found_distinctive = set()

    n = len(considered)
    for idx, source in enumerate(considered):
        weight = (n - idx) / n
        haystack = ' '.join((
            normalize_for_match(source['title']),
            normalize_for_match(source['hostname']),
            normalize_for_match(source['uri']),
        ))

        maker_hits = sum(1 for t in maker_tokens if t in haystack)
        if maker_hits:
            maker_found = True
        maker_hits_total += maker_hits

        product_hits = sum(1 for t in product_tokens if t in haystack)
        if product_hits:
            product_found = True
        product_hits_total += product_hits

        found_distinctive.update(t for t in distinctive_tokens if t in haystack)

        negative_this = any(t in haystack for t in NEGATIVE_SIGNAL_TOKENS)
        if negative_this:
            negative_hit_count += 1

        score += weight * (MAKER_HIT_POINTS if maker_hits > 0 else 0)
        score += weight * min(PRODUCT_POINTS_CAP, product_hits * PRODUCT_HIT_POINTS)
        score += weight * (NEGATIVE_HIT_PENALTY if negative_this else 0)

    clamped = max(0, min(100, _round_half_up(score)))

    negative_hit = negative_hit_count >= config.negative_threshold
    product_domain_hit = _domain_hit(considered, config.product_domains)
    non_product_domain_hit = _domain_hit(considered, NON_PRODUCT_DOMAINS)

    maker_missing = config.require_maker and len(maker_tokens) > 0 and not maker_found
    strong_product_mismatch = (
        len(distinctive_tokens) >= config.min_distinctive_tokens
        and len(found_distinctive) == 0
        and not product_domain_hit
    )

    if strong_product_mismatch:
        risk = RISK_VERY_HIGH
    elif maker_missing:
        risk = RISK_HIGH
    elif clamped < config.match_threshold:
        risk = RISK_MEDIUM
    else:
        risk = RISK_LOW

    has_negative_signal = negative_hit or non_product_domain_hit
    has_low_score = clamped <= config.review_low_score
    if config.require_negative_for_review:
        strong_signal = has_negative_signal and has_low_score
    else:
        strong_signal = has_negative_signal or has_low_score
    evidence_strong = n >= config.min_sources_for_review
    needs_review = evidence_strong and strong_product_mismatch and strong_signal

    reasons = []
    if maker_missing:
        reasons.append(REASON_MAKER_MISSING)
    if strong_product_mismatch:
        reasons.append(REASON_PRODUCT_MISMATCH)
    if negative_hit:
        reasons.append(REASON_NEGATIVE_SOURCES)
    if not reasons:
        reasons.append(REASON_CONSISTENT)
    reasons = reasons[:MAX_REASONS]

    logger.debug("Evidence score %d (%s) for %r / %r", clamped, risk, maker, product_name)

    return {
        'web_match_score': clamped,
        'needs_review': needs_review,
        'web_match_reasons': reasons,
        'web_match_reason': REASON_SEPARATOR.join(reasons),
        'web_sources': considered,
        'web_hit_risk': risk,
        'web_evidence': {
            'sources_count': n,
            'maker_found': maker_found,
            'product_found': product_found,
            'negative_hit': negative_hit,
            'negative_hit_count': negative_hit_count,
            'product_domain_hit': product_domain_hit,
            'non_product_domain_hit': non_product_domain_hit,
            'maker_hits_total': maker_hits_total,
            'product_hits_total': product_hits_total,
            'distinctive_token_count': len(distinctive_tokens),
            'distinctive_tokens': distinctive_tokens[:EVIDENCE_TOKEN_PREVIEW],
            'missing_distinctive_tokens': [
                t for t in distinctive_tokens if t not in found_distinctive
            ][:EVIDENCE_TOKEN_PREVIEW],
        },
    }


def format_evidence_flags(evidence: Optional[Dict]) -> str:
    """Compact evidence summary for exports: "maker:OK product:NG src:3"."""
    if not evidence:
        return ''
    maker = 'OK' if evidence.get('maker_found') else 'NG'
    product = 'OK' if evidence.get('product_found') else 'NG'
    return f"maker:{maker} product:{product} src:{evidence.get('sources_count', 0)}"
