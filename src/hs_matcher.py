"""
Core matching engine for HS code lookup.

Matching Approach:
    - Product names, maker names and catalog text are canonicalized with
      normalize_for_match() (NFKC, lowercase, punctuation → space)
    - Japanese product names are usually written without spaces, so the
      tokenizer pre-splits around known compound words and then splits long
      tokens at script boundaries (latin / digits / kana / kanji)
    - Catalog rows are ranked by keyword occurrence weighted by keyword length,
      so longer and repeated keywords win over short incidental ones

Variant Handling:
    - filter_distinctive_tokens() removes gender, size, colour and quantity
      tokens, leaving the tokens that identify the product itself
    - canonicalize_product_name() builds the batch consistency key so that
      "沈香香水 M" and "沈香香水 L" share one classification

The HS catalog is held by an explicit HSCodeCatalog object that the caller owns.
It loads lazily and is rebuilt only after invalidate().
"""

import logging
import operator
import re
import threading
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MIN_TOKEN_LENGTH = 2
SCRIPT_SPLIT_MIN_LENGTH = 8   # Only long, boundary-free tokens get script-run splitting

DEFAULT_SEARCH_LIMIT = 10
CANDIDATE_LIMIT = 5           # Candidates handed to the decision step
DETAILS_MAX_CHARS = 500

HS_CODE_LENGTH = 6
HS_CODE_UNKNOWN = "UNKNOWN"

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"

SCRIPT_DIGIT = "num"
SCRIPT_LATIN = "latin"
SCRIPT_KANA = "kana"
SCRIPT_KANJI = "kanji"
SCRIPT_OTHER = "other"


# ---------------------------------------------------------------------------
# Vocabulary tables
# ---------------------------------------------------------------------------

# Attribute words that are commonly glued to neighbouring text in Japanese
# product names ("市松花レディースステテコ")
COMPOUND_KEYWORDS: Tuple[str, ...] = (
    'レディース', 'メンズ', 'キッズ',
    'ステテコ', 'ズボン', 'パンツ', 'ショーツ', '下着', 'インナー',
    'ルームウェア', 'パジャマ', 'ナイトウェア',
    'ショート', 'ロング',
)

GENDER_TOKENS = frozenset({'レディース', 'メンズ', 'キッズ'})

SIZE_WORD_TOKENS = frozenset({
    'ショート', 'ロング',
    '小', '中', '大',
    'free', 'onesize', 'one', 'サイズ',
})

COLOR_TOKENS = frozenset({
    'black', 'white', 'gray', 'grey', 'red', 'blue', 'green', 'yellow', 'pink', 'beige', 'brown', 'navy',
    'ブラック', 'ホワイト', 'グレー', 'レッド', 'ブルー', 'グリーン', 'イエロー', 'ピンク', 'ベージュ', 'ブラウン', 'ネイビー',
})

SIZE_CODES: Tuple[str, ...] = ('xs', 's', 'm', 'l', 'xl', 'xxl', 'xxxl', 'll', '3l', '4l', '5l')

# Tokens that never identify a product on their own
DISTINCTIVE_DROP_TOKENS = GENDER_TOKENS | SIZE_WORD_TOKENS | COLOR_TOKENS

# Tokens dropped when building the batch consistency key. Gender words stay in:
# a ladies' and a men's version may well classify differently.
CONSISTENCY_DROP_TOKENS = frozenset(SIZE_CODES) | frozenset({'free', 'onesize', 'one', 'サイズ'}) | COLOR_TOKENS

SIZE_CODE_PATTERN = re.compile(r'^(?:' + '|'.join(SIZE_CODES) + r')$', re.IGNORECASE)

# Quantity / capacity / dimension tokens: 500ml, 2個, 10枚, 30cm
QUANTITY_PATTERN = re.compile(r'^[0-9]+(?:ml|l|g|kg|cm|mm|m|枚|個|本|袋|パック|set)$', re.IGNORECASE)

# Short ASCII codes such as "ll", "xl", "01"
SHORT_NOISE_PATTERN = re.compile(r'^[a-z0-9]{1,3}$', re.IGNORECASE)

_QUOTE_CHARS = re.compile(r'[\'"’‘“”`]')
_NON_WORD_RUN = re.compile(r'[\W_]+')
_WHITESPACE_RUN = re.compile(r'\s+')

# Legal-entity markers that rarely appear in page titles
_MAKER_PAREN_ENTITY = re.compile(r'[（(]\s*(?:株|有)\s*[）)]')
_MAKER_ENCLOSED_ENTITY = re.compile(r'[㈱㈲]')
_MAKER_JA_ENTITY = re.compile(
    r'(?:株式会社|有限会社|合同会社|合資会社|合名会社|'
    r'一般社団法人|一般財団法人|公益社団法人|公益財団法人)'
)
_MAKER_EN_ENTITY = re.compile(
    r'\b(?:co\.?|company|inc\.?|ltd\.?|llc|corp\.?|corporation)\b',
    re.IGNORECASE,
)

_NON_DIGIT = re.compile(r'[^0-9]')

# Source column names of the tariff workbook → canonical names
HS_TABLE_COLUMNS: Dict[str, str] = {
    '番号': 'code',
    'description_ja': 'description',
    'heading_description_ja': 'heading_description',
}


# ---------------------------------------------------------------------------
# String normalization
# ---------------------------------------------------------------------------

def _strip_quotes(text: str) -> str:
    return _QUOTE_CHARS.sub('', text)


@lru_cache(maxsize=50000)
def _normalize_cached(text: str) -> str:
    s = unicodedata.normalize('NFKC', text).lower()
    s = _strip_quotes(s)
    # [\W_] is "not a Unicode letter or digit"
    s = _NON_WORD_RUN.sub(' ', s)
    s = _WHITESPACE_RUN.sub(' ', s).strip()
    return s


def normalize_for_match(text: str) -> str:
    """
    Normalize free text for matching.

    Steps:
        1. Unicode NFKC (full-width → half-width, enclosed characters expanded)
        2. Lowercase
        3. Drop straight and curly quotes and backticks ("don't" → "dont")
        4. Every run of characters that are not letters or digits → one space
        5. Collapse whitespace and trim

    Non-string input normalizes to "".
    """
    if not isinstance(text, str) or not text:
        return ""
    return _normalize_cached(text)


def insert_spaces_for_compound_keywords(text: str) -> str:
    """Put spaces around every COMPOUND_KEYWORDS occurrence so they tokenize apart."""
    out = text or ''
    for kw in COMPOUND_KEYWORDS:
        if kw in out:
            out = out.replace(kw, f' {kw} ')
    return out


# ---------------------------------------------------------------------------
# Tokenization
# ---------------------------------------------------------------------------

def classify_script(ch: str) -> str:
    """Classify one character by fixed code-point ranges."""
    if '0' <= ch <= '9':
        return SCRIPT_DIGIT
    if 'a' <= ch <= 'z' or 'A' <= ch <= 'Z':
        return SCRIPT_LATIN
    cp = ord(ch)
    # Hiragana, katakana, katakana phonetic extensions, half-width katakana
    if (0x3040 <= cp <= 0x309F or 0x30A0 <= cp <= 0x30FF
            or 0x31F0 <= cp <= 0x31FF or 0xFF66 <= cp <= 0xFF9F):
        return SCRIPT_KANA
    if 0x4E00 <= cp <= 0x9FFF:
        return SCRIPT_KANJI
    return SCRIPT_OTHER


def split_by_script_runs(text: str) -> List[str]:
    """
    Split text wherever the script class changes.

    Example: "m市松花レディースステテコ" → ["m", "市松花", "レディースステテコ"]
    """
    runs = []
    buf = ''
    prev = None
    for ch in text or '':
        cls = classify_script(ch)
        if buf and cls == prev:
            buf += ch
            continue
        if buf:
            runs.append(buf)
        buf = ch
        prev = cls
    if buf:
        runs.append(buf)
    return runs


@lru_cache(maxsize=50000)
def _tokenize_cached(text: str) -> Tuple[str, ...]:
    pre = insert_spaces_for_compound_keywords(
        _strip_quotes(unicodedata.normalize('NFKC', text).lower())
    )
    norm = normalize_for_match(pre)
    if not norm:
        return ()

    base = [t for t in norm.split(' ') if len(t) >= MIN_TOKEN_LENGTH]

    extra = []
    for t in base:
        if len(t) >= SCRIPT_SPLIT_MIN_LENGTH:
            extra.extend(r for r in split_by_script_runs(t) if len(r) >= MIN_TOKEN_LENGTH)

    return tuple(dict.fromkeys(base + extra))


def tokenize_for_match(text: str) -> List[str]:
    """
    Tokenize a product or maker name into de-duplicated match tokens.

    Steps:
        1. NFKC + lowercase, then pre-split around COMPOUND_KEYWORDS
        2. normalize_for_match()
        3. Split on spaces, keep tokens of length >= 2 (base tokens)
        4. Base tokens of length >= 8 are also split at script boundaries,
           and runs of length >= 2 are added (recovers words from
           "ブランドabc香水" style text)

    The result is de-duplicated in first-seen order, so the same input always
    gives the same list.
    """
    if not isinstance(text, str) or not text:
        return []
    return list(_tokenize_cached(text))


# ---------------------------------------------------------------------------
# Token filters
# ---------------------------------------------------------------------------

def is_quantity_token(token: str) -> bool:
    return bool(QUANTITY_PATTERN.match(token))


def filter_distinctive_tokens(tokens: Iterable[str]) -> List[str]:
    """
    Keep only the tokens that identify the product rather than its variant.

    Drops gender words, size words and size codes (s/m/l/xl/3l...), quantity
    tokens (500ml, 2個), colours in English and katakana, and short ASCII
    noise of 1-3 characters.
    """
    kept = []
    for t in tokens or []:
        s = str(t or '').strip()
        if not s:
            continue
        if s in DISTINCTIVE_DROP_TOKENS:
            continue
        if SIZE_CODE_PATTERN.match(s):
            continue
        if is_quantity_token(s):
            continue
        if SHORT_NOISE_PATTERN.match(s):
            continue
        kept.append(s)
    return list(dict.fromkeys(kept))


def canonicalize_product_name(name: str) -> str:
    """
    Canonical product name for the batch consistency key.

    Size codes, free-size words, colours and quantities are removed so that
    colour/size variants of one product share a key. Applying it twice gives
    the same string.
    """
    kept = [
        t for t in tokenize_for_match(name)
        if t not in CONSISTENCY_DROP_TOKENS and not is_quantity_token(t)
    ]
    return ' '.join(kept)


def strip_maker_noise(maker: str) -> str:
    """
    Remove legal-entity markers from a maker name.

    "株式会社アロマ商会" → "アロマ商会", "ABC Trading Co., Ltd." → "ABC Trading ., ."
    (punctuation is dropped later by the tokenizer).
    """
    if not isinstance(maker, str) or not maker:
        return ""
    s = unicodedata.normalize('NFKC', maker)
    s = _MAKER_PAREN_ENTITY.sub('', s)
    s = _MAKER_ENCLOSED_ENTITY.sub('', s)
    s = _MAKER_JA_ENTITY.sub('', s)
    s = _MAKER_EN_ENTITY.sub('', s)
    return s.strip()


def normalize_hs_code(code) -> str:
    """
    Normalize an HS code to six digits without dots.

    "3307.41" → "330741", "9603" → "960300", "33074100" → "330741".
    Empty input gives HS_CODE_UNKNOWN.
    """
    if code is None:
        return HS_CODE_UNKNOWN
    raw = str(code).strip()
    if not raw:
        return HS_CODE_UNKNOWN
    digits = _NON_DIGIT.sub('', raw)
    return digits[:HS_CODE_LENGTH].ljust(HS_CODE_LENGTH, '0')


# ---------------------------------------------------------------------------
# HS catalog preprocessing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HSCodeEntry:
    code: str
    description: str
    heading_description: str = ''


def _cell_to_str(value) -> str:
    """Render a spreadsheet cell as text; 330741.0 → "330741", NaN → ""."""
    if value is None:
        return ''
    if isinstance(value, float):
        if pd.isna(value):
            return ''
        if value.is_integer():
            return str(int(value))
    return str(value)


def load_and_clean_hs_table(df_hs: pd.DataFrame) -> Tuple[pd.DataFrame, Dict]:
    """
    Clean the HS code reference table:
        1. Rename source columns (番号, description_ja, heading_description_ja)
           to code / description / heading_description
        2. Render every cell as text (integral floats lose their ".0")
        3. Drop rows with a null / empty code
        4. Warn about duplicate codes (kept, ranked separately)

    Returns:
        - Cleaned DataFrame with columns code, description, heading_description
        - Stats dict (includes 'warnings' list)
    """
    df = df_hs.rename(columns=HS_TABLE_COLUMNS).copy()
    warnings = []

    for col in ('code', 'description', 'heading_description'):
        if col not in df.columns:
            df[col] = ''
    df = df[['code', 'description', 'heading_description']].copy()

    original_count = len(df)

    for col in df.columns:
        df[col] = df[col].map(_cell_to_str).astype(str)
    df['code'] = df['code'].str.strip()

    df = df[df['code'] != ''].reset_index(drop=True)
    empty_dropped = original_count - len(df)

    code_counts = df['code'].value_counts()
    duplicate_codes = code_counts[code_counts > 1].index.tolist()
    if duplicate_codes:
        warnings.append(f"Found {len(duplicate_codes)} HS codes listed more than once")
        for code in duplicate_codes[:5]:
            warnings.append(f"  Code {code}: {code_counts[code]} rows")

    for w in warnings:
        logger.warning(w)

    stats = {
        'original': original_count,
        'empty_code_dropped': empty_dropped,
        'final': len(df),
        'warnings': warnings,
    }
    return df, stats


def build_hs_entries(df_hs_clean: pd.DataFrame) -> Tuple[HSCodeEntry, ...]:
    """Turn a cleaned HS table into an immutable entry tuple (catalog order kept)."""
    return tuple(
        HSCodeEntry(code=code, description=desc, heading_description=heading)
        for code, desc, heading in zip(
            df_hs_clean['code'], df_hs_clean['description'], df_hs_clean['heading_description']
        )
    )


class HSCodeCatalog:
    """
    Lazily loaded, read-only HS catalog.

    The loader is called on first use and its result is kept until
    invalidate() (or reload()) is called, e.g. after a new tariff file
    has been uploaded.
    """

    def __init__(self, loader: Callable[[], pd.DataFrame]):
        self._loader = loader
        self._lock = threading.Lock()
        self._entries: Optional[Tuple[HSCodeEntry, ...]] = None
        self._stats: Dict = {}

    @classmethod
    def from_frame(cls, df_hs: pd.DataFrame) -> 'HSCodeCatalog':
        frame = df_hs.copy()
        return cls(lambda: frame)

    @property
    def loaded(self) -> bool:
        return self._entries is not None

    @property
    def entries(self) -> Tuple[HSCodeEntry, ...]:
        entries = self._entries
        if entries is None:
            with self._lock:
                if self._entries is None:
                    df_clean, stats = load_and_clean_hs_table(self._loader())
                    self._entries = build_hs_entries(df_clean)
                    self._stats = stats
                    logger.info("Loaded HS catalog: %d entries (%d without code dropped)",
                                stats['final'], stats['empty_code_dropped'])
                entries = self._entries
        return entries

    @property
    def stats(self) -> Dict:
        if self._entries is None:
            _ = self.entries
        return dict(self._stats)

    def invalidate(self) -> None:
        with self._lock:
            self._entries = None
            self._stats = {}

    def reload(self) -> Tuple[HSCodeEntry, ...]:
        self.invalidate()
        return self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def search(self, keywords: Sequence[str], limit: int = DEFAULT_SEARCH_LIMIT) -> List[Dict]:
        return search_hs_codes(self.entries, keywords, limit)


# ---------------------------------------------------------------------------
# Keyword ranking
# ---------------------------------------------------------------------------

def _prepare_keywords(keywords: Optional[Iterable]) -> List[Tuple[int, re.Pattern]]:
    prepared = []
    for kw in keywords or []:
        if kw is None:
            continue
        kw = str(kw)
        if not kw:
            continue
        prepared.append((len(kw), re.compile(re.escape(kw.lower()))))
    return prepared


def _coerce_limit(limit) -> int:
    # Accepts numpy integers; floats and strings are not integral
    if limit is None:
        return DEFAULT_SEARCH_LIMIT
    try:
        return operator.index(limit)
    except TypeError:
        return DEFAULT_SEARCH_LIMIT


def search_hs_codes(
    entries: Sequence[HSCodeEntry],
    keywords: Optional[Iterable[str]],
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> List[Dict]:
    """
    Rank catalog entries against a keyword list.

    Scoring:
        - text = lowercase(description + " " + heading_description)
        - each keyword adds (occurrences in text) x (keyword length)
        - longer keywords and repeated hits therefore dominate

    Matching is literal substring matching, so "香" also hits "香料".
    Zero-score entries are dropped; ties keep catalog order.

    Returns:
        Up to `limit` dicts with code, description, score. A limit of 0 or
        less gives []; None or a non-integral limit uses DEFAULT_SEARCH_LIMIT.
    """
    limit = _coerce_limit(limit)
    if limit <= 0:
        return []

    prepared = _prepare_keywords(keywords)
    if not prepared or not entries:
        return []

    scored = []
    for entry in entries:
        text = f"{entry.description} {entry.heading_description}".lower()
        score = 0
        for length, pattern in prepared:
            hits = len(pattern.findall(text))
            if hits:
                score += hits * length
        if score > 0:
            scored.append((score, entry))

    # sorted() is stable: equal scores stay in catalog order
    scored = sorted(scored, key=lambda item: -item[0])[:limit]
    return [
        {'code': entry.code, 'description': entry.description, 'score': score}
        for score, entry in scored
    ]


def _as_list(value) -> List:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def build_search_keywords(product_name: str, investigation: Optional[Dict] = None) -> List[str]:
    """
    Collect HS search keywords from the product name and a research payload.

    Uses investigation keys hs_keywords, category, materials, usage and
    product_description. Every keyword is also expanded into its tokens so
    unspaced Japanese text still hits catalog descriptions.
    """
    investigation = investigation or {}
    raw = []
    raw.extend(_as_list(investigation.get('hs_keywords')))
    raw.extend(_as_list(investigation.get('category')))
    raw.extend(_as_list(investigation.get('materials')))
    raw.extend(_as_list(investigation.get('usage')))
    raw.extend(_as_list(product_name))
    raw.extend(_as_list(investigation.get('product_description')))

    keywords = []
    for kw in raw:
        if kw is None:
            continue
        kw = str(kw)
        for candidate in [kw] + tokenize_for_match(kw):
            candidate = candidate.strip()
            if len(candidate) >= MIN_TOKEN_LENGTH:
                keywords.append(candidate)
    return list(dict.fromkeys(keywords))


def format_search_response(results: List[Dict], catalog: Optional[HSCodeCatalog] = None) -> Dict:
    """
    Shape search results for the research agent's tool call.

    `details` carries the heading text (first 500 chars) when a catalog is given.
    """
    if not results:
        return {
            'status': 'no_results',
            'message': 'No matching HS code found. Try different keywords.',
            'suggestions': [
                'Add the material (plastic, metal, wood, ...)',
                'Add the usage (decorative, industrial, ...)',
                'Search by product category (fragrance, jewellery, cosmetics, ...)',
            ],
        }

    headings = {}
    if catalog is not None:
        for entry in catalog.entries:
            headings.setdefault(entry.code, entry.heading_description)

    return {
        'status': 'success',
        'count': len(results),
        'results': [
            {
                'hs_code': r['code'],
                'description': r['description'],
                'details': (headings.get(r['code']) or '')[:DETAILS_MAX_CHARS],
            }
            for r in results
        ],
    }


# ---------------------------------------------------------------------------
# HS code determination
# ---------------------------------------------------------------------------

def determine_hs_code(
    product: Dict,
    investigation: Optional[Dict],
    catalog: HSCodeCatalog,
    decide: Optional[Callable[[Dict, Dict, List[Dict]], Optional[Dict]]] = None,
) -> Dict:
    """
    Pick an HS code for one product.

    Steps:
        1. Build keywords from the product name and research payload
        2. Rank the catalog, keep the top 5 candidates
        3. Let `decide(product, investigation, candidates)` choose (external
           decision step); its hs_code is normalized to 6 digits
        4. With no candidates, an empty or all-zero code becomes UNKNOWN with
           low confidence
        5. If `decide` is absent, fails or returns nothing, fall back to the
           top candidate

    Returns a dict with hs_code, hs_description, reason, invoice_description,
    confidence, candidates, keywords (and error when the decision failed).
    """
    investigation = investigation or {}
    keywords = build_search_keywords(product.get('product_name', ''), investigation)
    candidates = catalog.search(keywords, CANDIDATE_LIMIT)

    fallback = {
        'hs_code': candidates[0]['code'] if candidates else HS_CODE_UNKNOWN,
        'hs_description': candidates[0]['description'] if candidates else '',
        'reason': '',
        'invoice_description': '',
        'confidence': CONFIDENCE_LOW,
        'candidates': candidates,
        'keywords': keywords,
    }

    if decide is None:
        fallback['reason'] = 'top keyword match'
        return fallback

    try:
        decision = decide(product, investigation, candidates)
    except Exception as e:
        logger.exception("HS code decision failed for %r", product.get('product_name', ''))
        fallback['error'] = str(e)
        return fallback

    if not decision:
        fallback['error'] = 'empty decision'
        return fallback

    result = dict(fallback)
    result.update({k: v for k, v in decision.items() if k not in ('candidates', 'keywords')})
    if result.get('hs_code'):
        result['hs_code'] = normalize_hs_code(result['hs_code'])
    if not candidates:
        if not result.get('hs_code') or result['hs_code'] == '0' * HS_CODE_LENGTH:
            result['hs_code'] = HS_CODE_UNKNOWN
        if not decision.get('confidence'):
            result['confidence'] = CONFIDENCE_LOW
    if not result.get('hs_code'):
        result['hs_code'] = fallback['hs_code']
    return result
