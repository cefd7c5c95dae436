import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import pandas as pd
import pytest

from hs_matcher import HSCodeCatalog


@pytest.fixture
def hs_frame():
    """Small HS table in the source column layout."""
    return pd.DataFrame([
        {'番号': '330190', 'description_ja': '沈香油及びその抽出物', 'heading_description_ja': '精油及びレジノイド'},
        {'番号': '330741', 'description_ja': '室内芳香用調製品', 'heading_description_ja': '香料を含むもの'},
        {'番号': '440399', 'description_ja': '木材', 'heading_description_ja': 'その他の木材'},
    ])


@pytest.fixture
def hs_catalog(hs_frame):
    return HSCodeCatalog.from_frame(hs_frame)
