"""
Placeholder substitution for uploaded ``.xlsx`` report templates.

Two modes share the global pass:

* row-clone: the first row holding the anchor token is snapshotted, cloned
  once per data row with its tokens substituted, then removed;
* indexed-family: ``{{employee_N}}`` / ``{{schedule_N_D}}`` style tokens are
  filled in place and leftovers are blanked.

Everything happens on an in-memory workbook; bytes are only produced after
every step succeeded.
"""
import re
import base64
import binascii
import logging
from copy import copy
from io import BytesIO
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from openpyxl import load_workbook
from openpyxl.cell.rich_text import CellRichText
from openpyxl.drawing.image import Image
from openpyxl.utils.cell import coordinate_from_string
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

_log = logging.getLogger('onduty')

MAX_TEMPLATE_BYTES = 5 * 1024 * 1024
SIGNATURE_TOKEN = '{{employee_signature}}'
_TOKEN_RE = re.compile(r'\{\{(\w[^}]*)\}\}')
_FAMILY_RE = re.compile(r'\{\{(?:employee|group|position)_\d+\}\}|\{\{schedule_\d+_\d+\}\}')


class TemplateError(Exception):
    """The template cannot be used: unreadable, or the anchor token is missing."""


def token(name: str) -> str:
    return '{{' + name + '}}'


def _text(value) -> Optional[str]:
    if isinstance(value, CellRichText):
        return str(value)
    if isinstance(value, str):
        return value
    return None


def _substitute(text: str, values: Mapping[str, object]) -> str:
    """Replace known tokens in one pass; substituted text is never rescanned."""
    def lookup(match):
        name = match.group(1)
        if name not in values:
            return match.group(0)
        value = values[name]
        return '' if value is None else str(value)
    return _TOKEN_RE.sub(lookup, text)


def load_template(content: bytes) -> Workbook:
    """Open template bytes as a workbook, raising ``TemplateError`` if that fails."""
    if not content:
        raise TemplateError("Template is empty.")
    if len(content) > MAX_TEMPLATE_BYTES:
        raise TemplateError("Template exceeds the 5 MiB limit.")
    try:
        wb = load_workbook(BytesIO(content))
    except Exception as e:
        raise TemplateError(f"Template is not a valid .xlsx workbook: {e}") from e
    if not wb.worksheets:
        raise TemplateError("Template worksheet not found.")
    return wb


def workbook_bytes(wb: Workbook) -> bytes:
    buf = BytesIO()
    wb.save(buf)
    return buf.getvalue()


def replace_globals(ws: Worksheet, values: Mapping[str, object]) -> int:
    """Replace global tokens in every cell; returns the number of cells changed."""
    changed = 0
    if not values:
        return changed
    for row in ws.iter_rows():
        for cell in row:
            text = _text(cell.value)
            if not text or '{{' not in text:
                continue
            new = _substitute(text, values)
            if new != text:
                cell.value = new
                changed += 1
    return changed


def find_anchor_row(ws: Worksheet, anchor: str) -> Optional[int]:
    """1-based index of the first row containing ``anchor``, scanning top to bottom."""
    for row in ws.iter_rows():
        for cell in row:
            text = _text(cell.value)
            if text and anchor in text:
                return cell.row
    return None


Bounds = Tuple[int, int, int, int]


def _detach_merges(ws: Worksheet, template_row: int) -> Tuple[List[Bounds], List[Bounds]]:
    """Unmerge every range reaching the template row or below it.

    Returns the ranges lying inside the template row and all the others,
    as ``(min_row, min_col, max_row, max_col)``.
    """
    inside, others = [], []
    for rng in list(ws.merged_cells.ranges):
        if rng.max_row < template_row:
            continue
        bounds = (rng.min_row, rng.min_col, rng.max_row, rng.max_col)
        if rng.min_row == rng.max_row == template_row:
            inside.append(bounds)
        else:
            others.append(bounds)
        ws.unmerge_cells(rng.coord)
    return inside, others


def _restore_merges(ws: Worksheet, template_row: int, count: int,
                    inside: List[Bounds], others: List[Bounds]) -> None:
    delta = count - 1
    for offset in range(count):
        row = template_row + offset
        for _, min_col, _, max_col in inside:
            ws.merge_cells(start_row=row, start_column=min_col, end_row=row, end_column=max_col)
    for min_row, min_col, max_row, max_col in others:
        # ranges below move, ranges spanning the template row stretch
        if min_row > template_row:
            min_row += delta
        max_row += delta
        if max_row < min_row or (min_row == max_row and min_col == max_col):
            continue
        ws.merge_cells(start_row=min_row, start_column=min_col, end_row=max_row, end_column=max_col)


def _shift_images(ws: Worksheet, template_row: int, delta: int) -> None:
    """Move images anchored below the template row by ``delta`` rows."""
    if not delta:
        return
    for image in ws._images:
        anchor = image.anchor
        if isinstance(anchor, str):
            col, row = coordinate_from_string(anchor)
            if row > template_row:
                image.anchor = f'{col}{row + delta}'
            continue
        marker = getattr(anchor, '_from', None)
        # markers are 0-based
        if marker is None or marker.row < template_row:
            continue
        marker.row += delta
        to = getattr(anchor, 'to', None)
        if to is not None:
            to.row += delta


def _relayout(ws: Worksheet, template_row: int, count: int, height: Optional[float],
              heights_below: Dict[int, float]) -> None:
    """Re-apply row heights after ``count`` clones replaced the template row.

    ``insert_rows``/``delete_rows`` move cells only.
    """
    delta = count - 1
    ws.row_dimensions[template_row].height = None
    for r in heights_below:
        ws.row_dimensions[r].height = None
    for offset in range(count):
        ws.row_dimensions[template_row + offset].height = height
    for r, h in heights_below.items():
        ws.row_dimensions[r + delta].height = h


def expand_rows(ws: Worksheet, anchor: str, rows: Sequence[Mapping[str, object]]) -> int:
    """Clone the anchor row once per entry of ``rows`` and drop the original.

    Raises ``TemplateError`` when no cell contains ``anchor``.
    """
    template_row = find_anchor_row(ws, anchor)
    if template_row is None:
        raise TemplateError(f"Template row with `{anchor}` not found.")

    max_col = ws.max_column
    snapshot = []
    for col in range(1, max_col + 1):
        cell = ws.cell(row=template_row, column=col)
        snapshot.append((col, cell.value, copy(cell._style) if cell.has_style else None))
    height = ws.row_dimensions[template_row].height
    heights_below = {
        r: dim.height for r, dim in ws.row_dimensions.items()
        if r > template_row and dim.height is not None
    }
    inside, others = _detach_merges(ws, template_row)

    position = template_row
    for data in rows:
        ws.insert_rows(position)
        for col, value, style in snapshot:
            target = ws.cell(row=position, column=col)
            text = _text(value)
            target.value = _substitute(text, data) if text is not None else value
            if style is not None:
                target._style = copy(style)
        position += 1
    ws.delete_rows(position)
    _relayout(ws, template_row, len(rows), height, heights_below)
    _restore_merges(ws, template_row, len(rows), inside, others)
    _shift_images(ws, template_row, len(rows) - 1)
    _log.debug("expanded template row %d into %d rows", template_row, len(rows))
    return len(rows)


def fill_indexed_family(ws: Worksheet, rows: Sequence[Mapping[str, object]], anchor: str = '{{employee_1}}') -> int:
    """Substitute ``{{employee_N}}``-style tokens in place.

    Each entry of ``rows`` maps family names (``employee``, ``group``,
    ``position``) to values and ``days`` to a list of day codes. Family
    tokens without data are blanked.
    """
    if find_anchor_row(ws, anchor) is None:
        raise TemplateError(f"Template placeholder `{anchor}` not found.")
    values: Dict[str, object] = {}
    for n, row in enumerate(rows, start=1):
        for family in ('employee', 'group', 'position'):
            values[f'{family}_{n}'] = row.get(family, '')
        for d, code in enumerate(row.get('days', []), start=1):
            values[f'schedule_{n}_{d}'] = code
    replace_globals(ws, values)
    for row in ws.iter_rows():
        for cell in row:
            text = _text(cell.value)
            if text and _FAMILY_RE.search(text):
                cell.value = _FAMILY_RE.sub('', text)
    return len(rows)


def _decode_signature(signature: str) -> Optional[bytes]:
    payload = signature.split(',', 1)[1] if ',' in signature else signature
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        _log.warning("Ignoring undecodable signature image")
        return None


def place_signature(ws: Worksheet, signature: Optional[str]) -> bool:
    """Clear ``{{employee_signature}}`` and anchor the PNG signature at that cell."""
    target = None
    for row in ws.iter_rows():
        for cell in row:
            text = _text(cell.value)
            if text and SIGNATURE_TOKEN in text:
                cell.value = text.replace(SIGNATURE_TOKEN, '')
                target = cell.coordinate
    if target is None or not signature:
        return False
    raw = _decode_signature(signature)
    if raw is None:
        return False
    image = Image(BytesIO(raw))
    image.width = 100
    image.height = 40
    image.anchor = target
    ws.add_image(image)
    return True


def render_row_template(content: bytes, anchor: str, rows: List[Mapping[str, object]],
                        global_tokens: Optional[Mapping[str, object]] = None,
                        signature: Optional[str] = None, with_signature: bool = False) -> bytes:
    """Global pass, row expansion and optional signature; returns the new workbook bytes."""
    wb = load_template(content)
    ws = wb.worksheets[0]
    replace_globals(ws, global_tokens or {})
    expand_rows(ws, token(anchor), rows)
    if with_signature:
        place_signature(ws, signature)
    return workbook_bytes(wb)


def render_indexed_template(content: bytes, global_tokens: Mapping[str, object],
                            family_rows: List[Mapping[str, object]]) -> bytes:
    wb = load_template(content)
    ws = wb.worksheets[0]
    replace_globals(ws, global_tokens)
    fill_indexed_family(ws, family_rows)
    return workbook_bytes(wb)
