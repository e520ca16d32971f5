"""Label-anchored HTML parsing into raw (unextracted) field fragments.

Locators search for a known label string and take the adjacent value, so
column/row reordering across source revisions does not break extraction.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup
from bs4.element import Tag

from stock_harvest.errors import MissingMandatoryFieldError

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
_LABEL_SEPARATORS = ":：= 　"


@dataclass(frozen=True)
class FieldLocator:
    name: str
    label: str
    selector: str = "td, th"
    required: bool = False


def _clean(text: Optional[str]) -> str:
    # \s covers the ideographic space used in TWSE listings.
    return _WS_RE.sub(" ", text or "").strip()


def _cell_text(cell: Tag) -> str:
    return _clean(cell.get_text(" ", strip=True))


def _soup(text: str) -> BeautifulSoup:
    return BeautifulSoup(text, "html.parser")


def _check_required(
    found: Dict[str, str], locators: Iterable[FieldLocator], source: str
) -> None:
    for loc in locators:
        if loc.required and loc.name not in found:
            raise MissingMandatoryFieldError(loc.name, source=source)


def _is_label(text: str, labels: Sequence[str]) -> bool:
    return any(label in text for label in labels)


def _value_after_label(
    element: Tag, label: str, labels: Sequence[str] = ()
) -> Optional[str]:
    """Value for a label cell: next value cell in the row, inline text, then the cell below.

    Cells holding another locator's label are never taken as a value.
    """
    sibling = element.find_next_sibling(["td", "th"])
    if sibling is not None:
        value = _cell_text(sibling)
        if value and not _is_label(value, labels):
            return value

    row = element.find_parent("tr")
    cells: List[Tag] = row.find_all(["td", "th"], recursive=False) if row is not None else []
    after = False
    for cell in cells:
        if cell is element:
            after = True
            continue
        if after:
            value = _cell_text(cell)
            if value and not _is_label(value, labels):
                return value

    own = _cell_text(element)
    idx = own.find(label)
    if idx >= 0:
        rest = own[idx + len(label) :].lstrip(_LABEL_SEPARATORS).strip()
        if rest:
            return rest

    # Label row above a value row: take the same column one row down.
    if row is not None and any(cell is element for cell in cells):
        column = next(i for i, cell in enumerate(cells) if cell is element)
        below = row.find_next_sibling("tr")
        if below is not None:
            below_cells = below.find_all(["td", "th"], recursive=False)
            if column < len(below_cells):
                value = _cell_text(below_cells[column])
                if value and not _is_label(value, labels):
                    return value
    return None


def _innermost_matches(soup: BeautifulSoup, loc: FieldLocator) -> List[Tag]:
    # Layout tables nest cells; an outer cell containing the label is not the anchor.
    out = []
    for element in soup.select(loc.selector):
        if loc.label not in _cell_text(element):
            continue
        nested = element.find_all(["td", "th"])
        if any(loc.label in _cell_text(inner) for inner in nested):
            continue
        out.append(element)
    return out


def parse_fields(
    text: str, locators: Sequence[FieldLocator], source: str = ""
) -> Dict[str, str]:
    """Map field name -> raw fragment for a label/value style page.

    Raises
    ------
    MissingMandatoryFieldError
        When a ``required`` locator has no match.
    """
    soup = _soup(text)
    found: Dict[str, str] = {}
    labels = [loc.label for loc in locators]
    for loc in locators:
        for element in _innermost_matches(soup, loc):
            value = _value_after_label(element, loc.label, labels)
            if value is not None:
                found[loc.name] = value
                break
        else:
            logger.debug("field_not_found source=%s field=%s label=%s", source, loc.name, loc.label)
    _check_required(found, locators, source)
    return found


def _resolve_columns(
    header: List[str], locators: Sequence[FieldLocator]
) -> Dict[str, int]:
    columns: Dict[str, int] = {}
    for loc in locators:
        for idx, cell in enumerate(header):
            if loc.label in cell:
                columns[loc.name] = idx
                break
    return columns


def _is_header(columns: Dict[str, int], locators: Sequence[FieldLocator]) -> bool:
    required = [loc.name for loc in locators if loc.required]
    if required:
        return all(name in columns for name in required)
    return bool(columns)


def parse_table(
    text: str,
    locators: Sequence[FieldLocator],
    table_selector: str = "table",
    source: str = "",
) -> List[Dict[str, str]]:
    """Map each data row of a labelled table to field name -> raw fragment.

    The header row is the first row holding every required label (any label
    when none is required); column positions are resolved from that row.
    Rows after the header with too few cells are skipped.

    Raises
    ------
    MissingMandatoryFieldError
        When no header row carries a required label.
    """
    soup = _soup(text)
    for table in soup.select(table_selector):
        rows = table.find_all("tr")
        for pos, tr in enumerate(rows):
            header = [_cell_text(c) for c in tr.find_all(["th", "td"])]
            columns = _resolve_columns(header, locators)
            if not _is_header(columns, locators):
                continue

            out: List[Dict[str, str]] = []
            width = max(columns.values()) + 1
            for data_row in rows[pos + 1 :]:
                cells = data_row.find_all("td")
                if len(cells) < width:
                    continue
                record = {}
                for name, idx in columns.items():
                    value = _cell_text(cells[idx])
                    if value:
                        record[name] = value
                out.append(record)
            logger.debug(
                "table_parsed source=%s columns=%s rows=%s", source, sorted(columns), len(out)
            )
            return out

    required = [loc for loc in locators if loc.required]
    if not required:
        return []
    page_text = _clean(soup.get_text(" "))
    missing = next((loc for loc in required if loc.label not in page_text), required[0])
    raise MissingMandatoryFieldError(missing.name, source=source)
