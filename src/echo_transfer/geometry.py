"""
Well-block geometry.

Well IDs are a row label followed by a 1-indexed, zero-padded column,
e.g. ``A01`` or ``AB07``. Row labels are a bijective base-26 numbering
(A=0 ... Z=25, AA=26). A well block is a ``;``-joined list of ``TL:BR``
ranges or single well IDs, e.g. ``A01:B02;C01:C02``.

Internally coordinates are ``(row, col)`` with both axes 0-indexed.
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from echo_transfer.exceptions import FormatError, InvalidRangeError

WELL_ID_PATTERN = re.compile(r"^([A-Z]{1,2})(\d{1,2})$")
RANGE_ENDPOINT_PATTERN = re.compile(r"^[A-Z]+\d+$")

DIRECTIONS = ("LR", "RL", "TB", "BT")

Coord = Tuple[int, int]


def number_to_letters(num: int) -> str:
    """0 -> 'A', 25 -> 'Z', 26 -> 'AA'."""
    if num < 0:
        raise ValueError(f"Row index must be non-negative, got {num}")
    letters = ""
    num += 1
    while num > 0:
        num, rem = divmod(num - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def letters_to_number(letters: str) -> int:
    """'A' -> 0, 'Z' -> 25, 'AA' -> 26."""
    result = 0
    for ch in letters:
        result = result * 26 + (ord(ch) - ord("A") + 1)
    return result - 1


def well_id_from_coords(row: int, col: int) -> str:
    if col < 0:
        raise ValueError(f"Column index must be non-negative, got {col}")
    return f"{number_to_letters(row)}{col + 1:02d}"


def coords_from_well_id(well_id: str) -> Coord:
    """Parse a well ID into 0-indexed ``(row, col)``.

    Raises:
        FormatError: if the ID is not letters followed by a 1-48 style column.
    """
    match = WELL_ID_PATTERN.match(well_id.strip()) if isinstance(well_id, str) else None
    if not match:
        raise FormatError(f"Invalid well ID format: {well_id!r}")
    col = int(match.group(2)) - 1
    if col < 0:
        raise FormatError(f"Invalid well ID format: {well_id!r}")
    return letters_to_number(match.group(1)), col


def normalize_well_id(well_id: str) -> str:
    """Zero-pad the column, so 'A1' becomes 'A01'."""
    return well_id_from_coords(*coords_from_well_id(well_id))


def sort_well_ids(well_ids: Iterable[str]) -> List[str]:
    """Sort well IDs in reading order (by row, then column)."""
    return sorted(well_ids, key=coords_from_well_id)


def _format_range(start: Coord, end: Coord) -> str:
    start_id = well_id_from_coords(*start)
    if start == end:
        return start_id
    return f"{start_id}:{well_id_from_coords(*end)}"


def parse_well_range(token: str) -> List[str]:
    """Expand one ``start:end`` or single-well token, row by row."""
    token = token.strip()
    parts = token.split(":")
    if len(parts) == 1:
        start = end = parts[0].strip()
    elif len(parts) == 2:
        start, end = (p.strip() for p in parts)
    else:
        raise InvalidRangeError(f"Invalid range format: {token!r}")

    if not RANGE_ENDPOINT_PATTERN.match(start) or not RANGE_ENDPOINT_PATTERN.match(end):
        raise InvalidRangeError(f"Invalid range format: {token!r}")
    try:
        start_row, start_col = coords_from_well_id(start)
        end_row, end_col = coords_from_well_id(end)
    except FormatError as err:
        raise InvalidRangeError(f"Invalid range format: {token!r}") from err

    rows = range(min(start_row, end_row), max(start_row, end_row) + 1)
    cols = range(min(start_col, end_col), max(start_col, end_col) + 1)
    return [well_id_from_coords(r, c) for r in rows for c in cols]


def get_some_wells(raw_range: str) -> List[str]:
    """Expand a well block string into the literal list of well IDs.

    Tokens are expanded in the order they appear; each range is expanded
    row by row. Empty tokens (e.g. a trailing ``;``) are ignored.

    Raises:
        InvalidRangeError: if any token has a malformed start or end.
    """
    wells: List[str] = []
    for token in raw_range.split(";"):
        if not token.strip():
            continue
        wells.extend(parse_well_range(token))
    return wells


def _row_run(row: int, col: int, max_col: int, available: Set[Coord]) -> int:
    run = 0
    while col + run <= max_col and (row, col + run) in available:
        run += 1
    return run


def _largest_rectangle(anchor: Coord, available: Set[Coord], max_row: int, max_col: int) -> Coord:
    """Bottom-right corner of the largest rectangle anchored at ``anchor``.

    Ties keep the shortest rectangle, so a full row run wins over a column
    of the same area.
    """
    start_row, start_col = anchor
    best_area = 0
    best_end = anchor
    width_limit = max_col - start_col + 1
    for height in range(max_row - start_row + 1):
        row = start_row + height
        width_limit = min(width_limit, _row_run(row, start_col, max_col, available))
        if width_limit == 0:
            break
        area = (height + 1) * width_limit
        if area > best_area:
            best_area = area
            best_end = (row, start_col + width_limit - 1)
    return best_end


def format_well_block(well_ids: Iterable[str]) -> str:
    """Collapse a set of wells into rectangle notation.

    Duplicates and ordering of the input do not matter. Rectangles are
    chosen greedily: the first uncovered well in reading order anchors the
    largest fully-populated rectangle below and to the right of it. The
    result is deterministic and covers exactly the input wells, though not
    necessarily with the fewest possible rectangles.

    Examples:
        >>> format_well_block(["B01", "A01", "C01"])
        'A01:C01'
        >>> format_well_block(["A01", "A02", "A03", "A05"])
        'A01:A03;A05'
    """
    coords = sorted({coords_from_well_id(w) for w in well_ids})
    if not coords:
        return ""

    min_row = coords[0][0]
    max_row = coords[-1][0]
    min_col = min(c for _, c in coords)
    max_col = max(c for _, c in coords)
    if len(coords) == (max_row - min_row + 1) * (max_col - min_col + 1):
        return _format_range((min_row, min_col), (max_row, max_col))

    available = set(coords)
    ranges = []
    for anchor in coords:
        if anchor not in available:
            continue
        end = _largest_rectangle(anchor, available, max_row, max_col)
        for r in range(anchor[0], end[0] + 1):
            for c in range(anchor[1], end[1] + 1):
                available.discard((r, c))
        ranges.append(_format_range(anchor, end))
    return ";".join(ranges)


def is_rectangular_selection(well_ids: Iterable[str]) -> bool:
    """True if the wells form exactly one filled rectangle."""
    coords = {coords_from_well_id(w) for w in well_ids}
    if not coords:
        return False
    rows = [r for r, _ in coords]
    cols = [c for _, c in coords]
    return len(coords) == (max(rows) - min(rows) + 1) * (max(cols) - min(cols) + 1)


def split_into_blocks(well_ids: Sequence[str], block_rows: int, block_cols: int) -> List[List[str]]:
    """Tile a rectangular selection into ``block_rows`` x ``block_cols`` blocks.

    Blocks are returned in reading order, and each block lists its wells in
    reading order. Used to lay replicate copies of a pattern side by side.
    """
    if block_rows <= 0 or block_cols <= 0:
        raise ValueError("Block dimensions must be positive")
    if not is_rectangular_selection(well_ids):
        raise ValueError("Selection is not a filled rectangle")

    coords = sorted({coords_from_well_id(w) for w in well_ids})
    top, left = coords[0]
    n_rows = coords[-1][0] - top + 1
    n_cols = max(c for _, c in coords) - left + 1
    if n_rows % block_rows or n_cols % block_cols:
        raise ValueError(
            f"A {n_rows}x{n_cols} selection cannot be split into "
            f"{block_rows}x{block_cols} blocks"
        )

    blocks = []
    for block_top in range(top, top + n_rows, block_rows):
        for block_left in range(left, left + n_cols, block_cols):
            blocks.append([
                well_id_from_coords(r, c)
                for r in range(block_top, block_top + block_rows)
                for c in range(block_left, block_left + block_cols)
            ])
    return blocks


_SORT_KEYS = {
    "LR": lambda rc: (rc[1], rc[0]),
    "RL": lambda rc: (-rc[1], rc[0]),
    "TB": lambda rc: (rc[0], rc[1]),
    "BT": lambda rc: (-rc[0], rc[1]),
}


def map_wells_to_concentrations(
    well_block,
    concentrations: Sequence,
    direction: str,
) -> List[List[str]]:
    """Assign the wells of a block to concentration slots.

    The block is linearised along ``direction`` and well ``i`` goes to slot
    ``i % len(concentrations)``, so replicates of one concentration are
    spread across the block instead of stacked together. For ``LR``/``RL``
    each row is walked across its columns (left-to-right or right-to-left);
    for ``TB``/``BT`` each column is walked down (or up) its rows.

    Args:
        well_block: block string such as ``"A01:B10"``, or a list of well IDs
        concentrations: one entry per slot
        direction: one of ``LR``, ``RL``, ``TB``, ``BT``

    Returns:
        One list of well IDs per concentration, in the same order as
        ``concentrations``.
    """
    direction = getattr(direction, "value", direction)
    if direction not in _SORT_KEYS:
        raise ValueError(f"Unknown direction {direction!r}; expected one of {DIRECTIONS}")
    if not concentrations:
        return []

    wells = get_some_wells(well_block) if isinstance(well_block, str) else list(well_block)
    grid: Dict[Coord, str] = {}
    for well_id in wells:
        grid[coords_from_well_id(well_id)] = normalize_well_id(well_id)
    rows = sorted({r for r, _ in grid})
    cols = sorted({c for _, c in grid})

    if direction in ("LR", "RL"):
        col_order = cols if direction == "LR" else cols[::-1]
        sequence = [(r, c) for r in rows for c in col_order if (r, c) in grid]
    else:
        row_order = rows if direction == "TB" else rows[::-1]
        sequence = [(r, c) for c in cols for r in row_order if (r, c) in grid]

    slots: List[List[Coord]] = [[] for _ in concentrations]
    for i, coord in enumerate(sequence):
        slots[i % len(concentrations)].append(coord)

    sort_key = _SORT_KEYS[direction]
    return [[grid[rc] for rc in sorted(slot, key=sort_key)] for slot in slots]
