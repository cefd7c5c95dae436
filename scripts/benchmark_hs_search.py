"""
Micro-benchmark for the HS matching hot paths.

Tests:
1. tokenize_for_match() on typical unspaced Japanese product names
2. search_hs_codes() on a synthetic 10k-row HS catalog
3. score_web_evidence() on a 5-source evidence list
4. run_batch() end-to-end on a synthetic 1k product sheet (stub collaborators)

Usage:
    python scripts/benchmark_hs_search.py
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
import time
import numpy as np
import pandas as pd
from hs_matcher import (
    HSCodeCatalog, build_search_keywords, determine_hs_code, search_hs_codes, tokenize_for_match,
)
from web_evidence import score_web_evidence
from batch_runner import compute_review_metrics, run_batch


MATERIALS = ['沈香', '白檀', '桧', '綿', 'ポリエステル', 'ステンレス', 'ガラス', '陶磁器']
PRODUCTS = ['香水', '線香', '抽出物', 'ステテコ', 'タオル', '食器', '花瓶', '精油']
COLORS = ['ブラック', 'ホワイト', 'ネイビー', '']
SIZES = ['S', 'M', 'L', 'LL', '']


def generate_synthetic_hs_catalog(n_rows: int = 10000) -> pd.DataFrame:
    """Generate a synthetic HS catalog in the source column layout."""
    rng = np.random.default_rng(42)
    data = []
    for i in range(n_rows):
        material = rng.choice(MATERIALS)
        product = rng.choice(PRODUCTS)
        data.append({
            '番号': f"{3301 + (i % 600):04d}{i % 100:02d}",
            'description_ja': f"{material}の{product}",
            'heading_description_ja': f"{product}及びその他の{material}製品",
        })
    return pd.DataFrame(data)


def generate_synthetic_products(n_rows: int = 1000) -> pd.DataFrame:
    """Generate a synthetic product master with size/colour variants."""
    rng = np.random.default_rng(7)
    data = []
    for i in range(n_rows):
        name = f"{rng.choice(MATERIALS)}{rng.choice(PRODUCTS)} {rng.choice(COLORS)} {rng.choice(SIZES)}".strip()
        data.append({
            'jan': f"49{i:011d}",
            'product_name': name,
            'maker': f"株式会社メーカー{i % 20}",
        })
    return pd.DataFrame(data)


def benchmark_function(func, *args, **kwargs):
    """Benchmark a function and return (result, elapsed_ms)."""
    start = time.perf_counter()
    result = func(*args, **kwargs)
    end = time.perf_counter()
    elapsed_ms = (end - start) * 1000
    return result, elapsed_ms


def benchmark_tokenize(n_iterations: int = 10000):
    """Benchmark tokenize_for_match() (cached after the first call)."""
    test_strings = [
        "沈香香水 50ml ブラック",
        "m市松花レディースステテコ LL",
        "ABC Trading Co., Ltd. Aroma Wood",
        "白檀線香徳用大箱300本入",
    ]

    print("\n" + "="*70)
    print("BENCHMARK: tokenize_for_match()")
    print("="*70)

    for test_str in test_strings:
        start = time.perf_counter()
        for _ in range(n_iterations):
            _ = tokenize_for_match(test_str)
        elapsed_ms = (time.perf_counter() - start) * 1000
        per_call_us = elapsed_ms * 1000 / n_iterations

        print(f"\nInput: {test_str}")
        print(f"  Tokens: {tokenize_for_match(test_str)}")
        print(f"  Total: {elapsed_ms:.2f}ms ({n_iterations} calls)")
        print(f"  Per call: {per_call_us:.2f}μs")


def benchmark_search(catalog: HSCodeCatalog, n_queries: int = 200):
    """Benchmark search_hs_codes() against the synthetic catalog."""
    print("\n" + "="*70)
    print(f"BENCHMARK: search_hs_codes() - {len(catalog):,} entries")
    print("="*70)

    keywords = build_search_keywords("沈香香水", {'materials': ['沈香'], 'category': '香料'})
    print(f"\nKeywords: {keywords}")

    start = time.perf_counter()
    for _ in range(n_queries):
        results = search_hs_codes(catalog.entries, keywords, 10)
    elapsed_ms = (time.perf_counter() - start) * 1000

    print(f"  Per query: {elapsed_ms / n_queries:.2f}ms")
    print(f"  Top result: {results[0] if results else None}")


def benchmark_score_evidence(n_iterations: int = 2000):
    """Benchmark score_web_evidence() on five sources."""
    print("\n" + "="*70)
    print("BENCHMARK: score_web_evidence() - 5 sources")
    print("="*70)

    sources = [
        {'title': '沈香香水 50ml | アロマ商会', 'uri': 'https://item.rakuten.co.jp/aroma/jinkou'},
        {'title': 'アロマ商会 公式サイト', 'uri': 'https://aroma-shokai.example/'},
        {'title': 'Visit Kyoto Travel Guide', 'uri': 'https://visitkyoto.example/travel'},
        {'title': '沈香 - Wikipedia', 'uri': 'https://ja.wikipedia.org/wiki/沈香'},
        {'title': '香水の選び方', 'uri': 'https://blog.example/perfume'},
    ]

    result, elapsed = benchmark_function(
        lambda: [score_web_evidence("株式会社アロマ商会", "沈香香水 50ml", sources)
                 for _ in range(n_iterations)]
    )
    print(f"\n  Per call: {elapsed * 1000 / n_iterations:.2f}μs")
    print(f"  Score: {result[0]['web_match_score']}  Risk: {result[0]['web_hit_risk']}")


def benchmark_run_batch(catalog: HSCodeCatalog):
    """Benchmark run_batch() end-to-end with stub collaborators."""
    print("\n" + "="*70)
    print("BENCHMARK: run_batch() - 1k product sheet")
    print("="*70)

    df_products = generate_synthetic_products(1000)

    def investigate(product):
        sources = [{'title': f"{product['product_name']} 通販", 'uri': 'https://item.rakuten.co.jp/x'}]
        research = {'materials': [], 'hs_keywords': tokenize_for_match(product['product_name'])}
        research.update(score_web_evidence(product['maker'], product['product_name'], sources))
        return research

    def classify(product, investigation):
        return determine_hs_code(product, investigation, catalog)

    df_result, elapsed = benchmark_function(run_batch, df_products, investigate, classify)
    metrics = compute_review_metrics(df_result)

    print(f"\n  Batch time: {elapsed:.2f}ms")
    print(f"  Per-item time: {elapsed / len(df_products):.2f}ms")
    print(f"  Reused from cache: {metrics['cache_hit_count']} ({metrics['cache_hit_count']/len(df_products)*100:.1f}%)")
    print(f"  Needs review: {metrics['needs_review_count']}")
    print(f"  Risk breakdown: {metrics['risk_breakdown']}")


def main():
    """Run all benchmarks."""
    print("="*70)
    print("HS MATCHER PERFORMANCE BENCHMARK")
    print("="*70)

    print("\nGenerating 10k synthetic HS catalog...")
    catalog = HSCodeCatalog.from_frame(generate_synthetic_hs_catalog(10000))
    _, load_ms = benchmark_function(lambda: catalog.entries)
    print(f"  Catalog load + clean: {load_ms:.2f}ms")

    benchmark_tokenize(10000)
    benchmark_search(catalog)
    benchmark_score_evidence()
    benchmark_run_batch(catalog)

    print("\n" + "="*70)
    print("BENCHMARK COMPLETE")
    print("="*70)


if __name__ == '__main__':
    main()
