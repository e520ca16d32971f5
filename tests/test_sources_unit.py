import pytest

from stock_harvest.input.sources import (
    DEFAULT_SOURCES,
    FUNDAMENTALS,
    LISTING,
    PRICE_HISTORY,
    SOURCE_ORDER,
    load_source_descriptors,
)


def test_defaults_cover_every_source_and_validate():
    sources = load_source_descriptors()
    assert tuple(sources) == SOURCE_ORDER
    assert sources[LISTING].encoding == "cp950"
    assert sources[FUNDAMENTALS].mode == "fields"
    required = {loc.name for loc in sources[PRICE_HISTORY].locators if loc.required}
    assert required == {"date", "close"}


def test_price_history_url_uses_first_day_of_run_month():
    url = DEFAULT_SOURCES[PRICE_HISTORY].url_for("2330", "2024-01-15")
    assert "date=20240101" in url
    assert "stockNo=2330" in url


def test_config_overrides_single_key():
    sources = load_source_descriptors({"sources": {"price_history": {"encoding": "Big5"}}})
    assert sources[PRICE_HISTORY].encoding == "big5"
    assert sources[PRICE_HISTORY].locators == DEFAULT_SOURCES[PRICE_HISTORY].locators


def test_config_overrides_locators():
    cfg = {
        "sources": {
            "fundamentals": {
                "locators": [{"name": "pe_ratio", "label": "PER", "required": True}],
            }
        }
    }
    sources = load_source_descriptors(cfg)
    (locator,) = sources[FUNDAMENTALS].locators
    assert locator.label == "PER"
    assert locator.required is True


def test_unknown_source_rejected():
    with pytest.raises(ValueError, match="Unknown sources"):
        load_source_descriptors({"sources": {"news": {}}})


def test_unknown_encoding_rejected():
    with pytest.raises(ValueError, match="unknown encoding"):
        load_source_descriptors({"sources": {"listing": {"encoding": "klingon"}}})


def test_non_http_url_rejected():
    with pytest.raises(ValueError, match="invalid url_template"):
        load_source_descriptors({"sources": {"listing": {"url_template": "ftp://x/{code}"}}})


def test_empty_locators_rejected():
    with pytest.raises(ValueError, match="no field locators"):
        load_source_descriptors({"sources": {"listing": {"locators": []}}})


def test_invalid_mode_rejected():
    with pytest.raises(ValueError, match="invalid mode"):
        load_source_descriptors({"sources": {"fundamentals": {"mode": "json"}}})
