from datetime import date

import pytest

from stock_harvest.input.harvest import Harvester
from stock_harvest.input.sources import (
    FUNDAMENTALS,
    INSTITUTIONAL,
    LISTING,
    PRICE_HISTORY,
    load_source_descriptors,
)

AS_OF = date(2024, 1, 31)

NAMES = {"2330": "台積電", "2317": "鴻海", "2454": "聯發科"}


def listing_page(code: str) -> bytes:
    html = f"""
    <table class="h4">
      <tr><td>頁面編號</td><td>國際證券編碼</td><td>有價證券代號</td><td>有價證券名稱</td><td>市場別</td></tr>
      <tr><td>1</td><td>TW000{code}008</td><td>{code}</td><td>{NAMES[code]}</td><td>上市</td></tr>
    </table>
    """
    return html.encode("cp950")


PRICE_PAGE = """
<table>
  <thead>
    <tr><td colspan="9">113年01月 各日成交資訊</td></tr>
    <tr><th>日期</th><th>成交股數</th><th>成交金額</th><th>開盤價</th><th>最高價</th>
        <th>最低價</th><th>收盤價</th><th>漲跌價差</th><th>成交筆數</th></tr>
  </thead>
  <tbody>
    <tr><td>113/01/02</td><td>26,059,058</td><td>15,808,517,770</td><td>590.00</td>
        <td>593.00</td><td>589.00</td><td>593.00</td><td>+0.00</td><td>19,361</td></tr>
    <tr><td>113/01/03</td><td>37,106,886</td><td>21,588,909,015</td><td>584.00</td>
        <td>585.00</td><td>578.00</td><td>578.00</td><td>-15.00</td><td>35,464</td></tr>
  </tbody>
</table>
""".encode("utf-8")

FUNDAMENTALS_PAGE = """
<table>
  <tr><td>成交價</td><td>578</td><td>本益比</td><td>15.20</td></tr>
  <tr><td>股價淨值比</td><td>4.10</td><td>殖利率</td><td>2.35%</td></tr>
  <tr><td>市值</td><td>14,989億</td></tr>
</table>
""".encode("utf-8")

INSTITUTIONAL_PAGE = """
<table>
  <tr><th>日期</th><th>外資買賣超</th><th>投信買賣超</th><th>自營商買賣超</th></tr>
  <tr><td>'24/01/03</td><td>-12,345</td><td>1,200</td><td>-300</td></tr>
</table>
""".encode("utf-8")


class FakeFetcher:
    """Serve canned pages per (source, code); an exception instance is raised instead."""

    def __init__(self, overrides=None):
        self.overrides = dict(overrides or {})
        self.calls = []

    def fetch(self, descriptor, code, run_date):
        self.calls.append((descriptor.name, code, run_date))
        for key in ((descriptor.name, code), descriptor.name):
            if key in self.overrides:
                value = self.overrides[key]
                if isinstance(value, Exception):
                    raise value
                return value
        if descriptor.name == LISTING:
            return listing_page(code)
        return {
            PRICE_HISTORY: PRICE_PAGE,
            FUNDAMENTALS: FUNDAMENTALS_PAGE,
            INSTITUTIONAL: INSTITUTIONAL_PAGE,
        }[descriptor.name]


@pytest.fixture
def make_harvester():
    def _make(overrides=None):
        fetcher = FakeFetcher(overrides)
        harvester = Harvester(
            fetcher=fetcher,
            sources=load_source_descriptors(),
            run_date="2024-01-03",
            as_of=AS_OF,
        )
        return harvester, fetcher

    return _make


@pytest.fixture
def fake_fetcher_cls():
    return FakeFetcher
