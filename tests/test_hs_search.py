"""
Tests for the HS catalog and keyword ranking:
- load_and_clean_hs_table() column mapping + empty-code filtering
- HSCodeCatalog lazy load / invalidate / reload
- search_hs_codes() scoring, ordering, limits
- build_search_keywords() / determine_hs_code() / format_search_response()
"""
import numpy as np
import pandas as pd
import pytest

from hs_matcher import (
    CONFIDENCE_LOW,
    DEFAULT_SEARCH_LIMIT,
    HS_CODE_UNKNOWN,
    HSCodeCatalog,
    HSCodeEntry,
    build_search_keywords,
    determine_hs_code,
    format_search_response,
    load_and_clean_hs_table,
    search_hs_codes,
)


def _entries(*rows):
    return tuple(HSCodeEntry(code, desc, heading) for code, desc, heading in rows)


# ---------------------------------------------------------------------------
# Catalog cleaning
# ---------------------------------------------------------------------------

def test_load_and_clean_drops_empty_codes():
    df = pd.DataFrame({
        '番号': [330741.0, np.nan, '  ', '9603'],
        'description_ja': ['室内芳香用調製品', 'x', 'y', 'ブラシ'],
        'heading_description_ja': ['香料', '', '', np.nan],
    })
    df_clean, stats = load_and_clean_hs_table(df)

    assert list(df_clean['code']) == ['330741', '9603']
    assert list(df_clean['heading_description']) == ['香料', '']
    assert stats['original'] == 4
    assert stats['empty_code_dropped'] == 2
    assert stats['final'] == 2
    assert stats['warnings'] == []


def test_load_and_clean_accepts_canonical_columns_and_warns_on_duplicates():
    df = pd.DataFrame({
        'code': ['1', '1', '2'],
        'description': ['a', 'b', 'c'],
    })
    df_clean, stats = load_and_clean_hs_table(df)

    assert list(df_clean.columns) == ['code', 'description', 'heading_description']
    assert list(df_clean['heading_description']) == ['', '', '']
    assert stats['warnings'][0] == "Found 1 HS codes listed more than once"


def test_load_and_clean_empty_frame():
    df_clean, stats = load_and_clean_hs_table(pd.DataFrame())
    assert len(df_clean) == 0
    assert stats['final'] == 0


def test_catalog_loads_lazily_and_reloads_after_invalidate(hs_frame):
    calls = []
    frames = [hs_frame, hs_frame.iloc[:1]]

    def loader():
        calls.append(1)
        return frames[min(len(calls), len(frames)) - 1]

    catalog = HSCodeCatalog(loader)
    assert not catalog.loaded
    assert calls == []

    assert len(catalog) == 3
    catalog.search(['木材'])
    assert len(calls) == 1

    catalog.invalidate()
    assert not catalog.loaded
    assert len(catalog) == 1
    assert len(calls) == 2

    catalog.reload()
    assert len(calls) == 3


def test_catalog_entries_are_immutable(hs_catalog):
    entries = hs_catalog.entries
    assert isinstance(entries, tuple)
    with pytest.raises(Exception):
        entries[0].code = '999999'


def test_catalog_stats(hs_catalog):
    assert hs_catalog.stats['final'] == 3


# ---------------------------------------------------------------------------
# Keyword ranking
# ---------------------------------------------------------------------------

def test_reference_entry_ranked_first_for_its_keywords(hs_catalog):
    results = hs_catalog.search(['沈香', '香料'])
    assert results[0]['code'] == '330190'
    assert results[0]['description'] == '沈香油及びその抽出物'
    assert results[0]['score'] > 0


def test_ties_keep_catalog_order(hs_catalog):
    # 330190 hits 沈香 once, 330741 hits 香料 once: both score 2
    results = hs_catalog.search(['沈香', '香料'])
    assert [(r['code'], r['score']) for r in results] == [('330190', 2), ('330741', 2)]


def test_longer_and_repeated_keywords_score_higher(hs_catalog):
    results = hs_catalog.search(['香', '室内芳香用'])
    # 330741: 香 x2 (芳香, 香料) + 室内芳香用 x1 * 5 = 7; 330190: 香 x1 = 1
    assert [(r['code'], r['score']) for r in results] == [('330741', 7), ('330190', 1)]

    results = hs_catalog.search(['木材'])
    assert results == [{'code': '440399', 'description': '木材', 'score': 4}]


def test_keywords_are_literal_and_case_insensitive():
    entries = _entries(
        ('1', 'axb a.b', ''),
        ('2', 'axb', ''),
        ('3', 'PVC製の床材', ''),
    )
    assert [r['code'] for r in search_hs_codes(entries, ['a.b'])] == ['1']
    assert search_hs_codes(entries, ['pvc']) == [{'code': '3', 'description': 'PVC製の床材', 'score': 3}]
    assert search_hs_codes(entries, ['PVC'])[0]['score'] == 3


def test_occurrences_do_not_overlap():
    entries = _entries(('1', 'aaa', ''))
    assert search_hs_codes(entries, ['aa'])[0]['score'] == 2


@pytest.mark.parametrize("keywords", [[], None, [None, ''], ['存在しない語']])
def test_no_keywords_or_no_matches_gives_empty_list(hs_catalog, keywords):
    assert hs_catalog.search(keywords) == []


def test_empty_catalog_gives_empty_list():
    assert search_hs_codes((), ['木材']) == []


def test_limit():
    entries = _entries(*[(str(i), '木材', '') for i in range(15)])
    assert len(search_hs_codes(entries, ['木材'], limit=2)) == 2
    assert len(search_hs_codes(entries, ['木材'])) == DEFAULT_SEARCH_LIMIT
    # Missing or non-integral limits fall back to the default
    assert len(search_hs_codes(entries, ['木材'], limit=None)) == DEFAULT_SEARCH_LIMIT
    assert len(search_hs_codes(entries, ['木材'], limit='3')) == DEFAULT_SEARCH_LIMIT
    assert len(search_hs_codes(entries, ['木材'], limit=2.5)) == DEFAULT_SEARCH_LIMIT


@pytest.mark.parametrize("limit, expected", [
    (0, 0),
    (-1, 0),
    (np.int64(3), 3),
    (np.int32(1), 1),
    (12, 12),
    (50, 15),
])
def test_limit_is_never_exceeded(limit, expected):
    entries = _entries(*[(str(i), '木材', '') for i in range(15)])
    results = search_hs_codes(entries, ['木材'], limit=limit)
    assert len(results) == expected
    assert len(results) <= max(int(limit), 0)


KEYWORD_SETS = [
    ['木材', '香', '沈香'],
    ['香料', '香料', '精油'],
    ['の', 'もの', '調製品', '抽出物'],
    ['室内芳香用調製品'],
]


@pytest.mark.parametrize("keywords", KEYWORD_SETS)
def test_results_sorted_positive_and_limited(hs_catalog, keywords):
    for limit in (1, 2, 10):
        results = hs_catalog.search(keywords, limit)
        scores = [r['score'] for r in results]
        assert len(results) <= limit
        assert all(s > 0 for s in scores)
        assert scores == sorted(scores, reverse=True)
        assert results == hs_catalog.search(keywords, limit)


# ---------------------------------------------------------------------------
# Keywords, decision, tool response
# ---------------------------------------------------------------------------

def test_build_search_keywords_collects_and_expands():
    investigation = {
        'hs_keywords': ['沈香', '香料'],
        'category': '香水類',
        'materials': ['沈香'],
        'usage': None,
        'product_description': '',
    }
    assert build_search_keywords('沈香香水', investigation) == ['沈香', '香料', '香水類', '沈香香水']


def test_build_search_keywords_adds_tokens():
    assert build_search_keywords('x', {'hs_keywords': ['Aroma Wood']}) == ['Aroma Wood', 'aroma', 'wood']
    assert build_search_keywords('沈香香水', None) == ['沈香香水']


PRODUCT = {'product_name': '沈香香水'}
INVESTIGATION = {'hs_keywords': ['沈香', '香料']}


def test_determine_hs_code_without_decider_uses_top_candidate(hs_catalog):
    result = determine_hs_code(PRODUCT, INVESTIGATION, hs_catalog)
    assert result['hs_code'] == '330190'
    assert result['confidence'] == CONFIDENCE_LOW
    assert [c['code'] for c in result['candidates']] == ['330190', '330741']
    assert result['keywords'] == ['沈香', '香料', '沈香香水']


def test_determine_hs_code_normalizes_decision(hs_catalog):
    seen = {}

    def decide(product, investigation, candidates):
        seen['candidates'] = candidates
        return {'hs_code': '3307.41', 'confidence': 'high', 'reason': 'room fragrance'}

    result = determine_hs_code(PRODUCT, INVESTIGATION, hs_catalog, decide)
    assert result['hs_code'] == '330741'
    assert result['confidence'] == 'high'
    assert result['reason'] == 'room fragrance'
    assert len(seen['candidates']) == 2
    assert 'error' not in result


def test_determine_hs_code_falls_back_when_decision_fails(hs_catalog):
    def decide(product, investigation, candidates):
        raise RuntimeError("boom")

    result = determine_hs_code(PRODUCT, INVESTIGATION, hs_catalog, decide)
    assert result['hs_code'] == '330190'
    assert result['error'] == 'boom'

    result = determine_hs_code(PRODUCT, INVESTIGATION, hs_catalog, lambda *a: None)
    assert result['hs_code'] == '330190'
    assert result['error'] == 'empty decision'


def test_determine_hs_code_without_candidates(hs_catalog):
    product = {'product_name': 'zzz'}
    assert determine_hs_code(product, {}, hs_catalog)['hs_code'] == HS_CODE_UNKNOWN

    result = determine_hs_code(product, {}, hs_catalog, lambda *a: {'hs_code': '000000'})
    assert result['hs_code'] == HS_CODE_UNKNOWN
    assert result['confidence'] == CONFIDENCE_LOW

    result = determine_hs_code(product, {}, hs_catalog, lambda *a: {'hs_code': '9603.90'})
    assert result['hs_code'] == '960390'
    assert result['confidence'] == CONFIDENCE_LOW


def test_format_search_response(hs_catalog):
    empty = format_search_response([])
    assert empty['status'] == 'no_results'
    assert len(empty['suggestions']) == 3

    response = format_search_response(hs_catalog.search(['木材']), hs_catalog)
    assert response['status'] == 'success'
    assert response['count'] == 1
    assert response['results'][0] == {'hs_code': '440399', 'description': '木材', 'details': 'その他の木材'}


def test_format_search_response_truncates_details():
    catalog = HSCodeCatalog.from_frame(pd.DataFrame({
        'code': ['1'], 'description': ['木材'], 'heading_description': ['x' * 800],
    }))
    response = format_search_response(catalog.search(['木材']), catalog)
    assert len(response['results'][0]['details']) == 500
