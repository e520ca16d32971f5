import pytest

from stock_harvest.errors import MissingMandatoryFieldError
from stock_harvest.input.document import FieldLocator, parse_fields, parse_table

PRICE_HTML = """
<html><body>
<table>
  <thead>
    <tr><td colspan="4">113年01月 2330 台積電 各日成交資訊</td></tr>
    <tr><th>日期</th><th>成交股數</th><th>開盤價</th><th>收盤價</th></tr>
  </thead>
  <tbody>
    <tr><td>113/01/02</td><td>26,059,058</td><td>590.00</td><td>593.00</td></tr>
    <tr><td>113/01/03</td><td>37,106,886</td><td>584.00</td><td>578.00</td></tr>
    <tr><td colspan="4">說明</td></tr>
  </tbody>
</table>
</body></html>
"""

PRICE_LOCATORS = [
    FieldLocator("date", "日期", required=True),
    FieldLocator("volume", "成交股數"),
    FieldLocator("open", "開盤價"),
    FieldLocator("close", "收盤價", required=True),
]


def test_parse_table_maps_rows_by_header_labels():
    rows = parse_table(PRICE_HTML, PRICE_LOCATORS, source="price_history")
    assert rows == [
        {"date": "113/01/02", "volume": "26,059,058", "open": "590.00", "close": "593.00"},
        {"date": "113/01/03", "volume": "37,106,886", "open": "584.00", "close": "578.00"},
    ]


def test_parse_table_survives_column_reordering():
    html = """
    <table>
      <tr><th>收盤價</th><th>日期</th></tr>
      <tr><td>593.00</td><td>113/01/02</td></tr>
    </table>
    """
    rows = parse_table(html, PRICE_LOCATORS)
    assert rows == [{"close": "593.00", "date": "113/01/02"}]


def test_parse_table_omits_empty_cells():
    html = """
    <table>
      <tr><th>日期</th><th>開盤價</th><th>收盤價</th></tr>
      <tr><td>113/01/02</td><td></td><td>593.00</td></tr>
    </table>
    """
    rows = parse_table(html, PRICE_LOCATORS)
    assert rows == [{"date": "113/01/02", "close": "593.00"}]


def test_parse_table_missing_mandatory_label_raises():
    html = "<table><tr><th>日期</th><th>開盤價</th></tr><tr><td>1</td><td>2</td></tr></table>"
    with pytest.raises(MissingMandatoryFieldError) as info:
        parse_table(html, PRICE_LOCATORS, source="price_history")
    assert info.value.field == "close"
    assert info.value.source == "price_history"


def test_parse_table_without_required_locators_returns_empty():
    locators = [FieldLocator("pe_ratio", "本益比")]
    assert parse_table("<p>查無資料</p>", locators) == []


def test_parse_table_honours_table_selector():
    html = """
    <table><tr><th>日期</th><th>收盤價</th></tr><tr><td>x</td><td>y</td></tr></table>
    <table class="h4"><tr><th>日期</th><th>收盤價</th></tr><tr><td>113/01/02</td><td>1</td></tr></table>
    """
    rows = parse_table(html, PRICE_LOCATORS, table_selector="table.h4")
    assert rows == [{"date": "113/01/02", "close": "1"}]


FUNDAMENTAL_HTML = """
<table>
  <tr><td>
    <table>
      <tr><td>成交價</td><td>593</td><td>本益比</td><td>15.20</td></tr>
      <tr><td>股價淨值比</td><td>4.10</td><td>殖利率</td><td>2.35%</td></tr>
      <tr><td>市值</td><td>15,378億</td></tr>
    </table>
  </td></tr>
</table>
"""

FUNDAMENTAL_LOCATORS = [
    FieldLocator("pe_ratio", "本益比"),
    FieldLocator("pb_ratio", "股價淨值比"),
    FieldLocator("dividend_yield", "殖利率"),
    FieldLocator("market_cap", "市值"),
]


def test_parse_fields_reads_adjacent_cells_in_nested_layout():
    found = parse_fields(FUNDAMENTAL_HTML, FUNDAMENTAL_LOCATORS, source="fundamentals")
    assert found == {
        "pe_ratio": "15.20",
        "pb_ratio": "4.10",
        "dividend_yield": "2.35%",
        "market_cap": "15,378億",
    }


def test_parse_fields_absent_optional_label_is_omitted():
    html = "<table><tr><td>本益比</td><td>15.20</td></tr></table>"
    found = parse_fields(html, FUNDAMENTAL_LOCATORS)
    assert found == {"pe_ratio": "15.20"}


def test_parse_fields_inline_label_value():
    html = "<div><span>本益比：15.20</span></div>"
    locator = FieldLocator("pe_ratio", "本益比", selector="span")
    assert parse_fields(html, [locator]) == {"pe_ratio": "15.20"}


def test_parse_fields_missing_required_raises():
    locator = FieldLocator("close", "收盤價", required=True)
    with pytest.raises(MissingMandatoryFieldError):
        parse_fields("<table><tr><td>本益比</td><td>1</td></tr></table>", [locator])


def test_parse_fields_label_row_above_value_row():
    html = """
    <table>
      <tr><td>本益比</td><td>股價淨值比</td><td>殖利率</td><td>市值</td></tr>
      <tr><td>15.20</td><td>4.10</td><td>2.35%</td><td>14,989億</td></tr>
    </table>
    """
    found = parse_fields(html, FUNDAMENTAL_LOCATORS, source="fundamentals")
    assert found == {
        "pe_ratio": "15.20",
        "pb_ratio": "4.10",
        "dividend_yield": "2.35%",
        "market_cap": "14,989億",
    }


def test_parse_fields_never_returns_a_neighbouring_label():
    html = """
    <table>
      <tr><td>本益比</td><td>股價淨值比</td></tr>
      <tr><td></td><td>4.10</td></tr>
    </table>
    """
    found = parse_fields(html, FUNDAMENTAL_LOCATORS)
    assert found == {"pb_ratio": "4.10"}
