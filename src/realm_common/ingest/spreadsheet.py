"""
Parser for the roster Excel export.

Handles:
- Filename contract: <kingdom>_<YYYYMMDD>_<HHMM>utc.xlsx gives kingdom + UTC timestamp
- Data worksheet lookup (kingdom-named sheet, fixed fallbacks, then third sheet)
- Fixed 39-column row layout, header on row 1
- Two numeric policies: small integers vs. full-precision counters

Pure function of (bytes, filename); nothing here touches the database.

Usage:
    parsed = parse_spreadsheet(data, "671_20250810_2040utc.xlsx")
    for record in parsed.players:
        print(record.lord_id, record.name, record.current_power)
"""

import io
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import PurePath
from typing import Optional

import pandas as pd

from .errors import ValidationError

logger = logging.getLogger(__name__)

FILENAME_PATTERN = re.compile(r"^(\d+)_(\d{8})_(\d{4})utc\.(xlsx|xls)$", re.IGNORECASE)
EXPECTED_FILENAME = "<kingdom>_YYYYMMDD_HHMMutc.xlsx (e.g. 671_20250810_2040utc.xlsx)"

# Tried in order when no sheet is named after the kingdom
FALLBACK_SHEET_NAMES = ("671", "Data")
FALLBACK_SHEET_INDEX = 2

LORD_ID_MAX_LENGTH = 32
NAME_MAX_LENGTH = 100

# Counters are stored as NUMERIC(38, 0)
BIG_COUNT_LIMIT = 10 ** 38

# Field → 1-based column in the export
COLUMN_MAP = {
    "lord_id": 1,
    "name": 2,
    "division": 3,
    "alliance_id": 4,
    "alliance_tag": 5,
    "current_power": 6,
    "power": 7,
    "merits": 8,
    "units_killed": 9,
    "units_dead": 10,
    "units_healed": 11,
    "t1_kill_count": 12,
    "t2_kill_count": 13,
    "t3_kill_count": 14,
    "t4_kill_count": 15,
    "t5_kill_count": 16,
    "building_power": 17,
    "hero_power": 18,
    "legion_power": 19,
    "tech_power": 20,
    "victories": 21,
    "defeats": 22,
    "city_sieges": 23,
    "scouted": 24,
    "helps_given": 25,
    "gold": 26,
    "gold_spent": 27,
    "wood": 28,
    "wood_spent": 29,
    "ore": 30,
    "ore_spent": 31,
    "mana": 32,
    "mana_spent": 33,
    "gems": 34,
    "gems_spent": 35,
    "resources_given": 36,
    "resources_given_count": 37,
    "city_level": 38,
    "faction": 39,
}

SMALL_INT_FIELDS = frozenset({
    "division", "victories", "defeats", "city_sieges", "scouted",
    "helps_given", "resources_given_count", "city_level",
})
OPTIONAL_TEXT_FIELDS = frozenset({"alliance_id", "alliance_tag", "faction"})
REQUIRED_TEXT_FIELDS = frozenset({"lord_id", "name"})
BIG_COUNT_FIELDS = frozenset(COLUMN_MAP) - SMALL_INT_FIELDS - OPTIONAL_TEXT_FIELDS - REQUIRED_TEXT_FIELDS

_LEADING_INT = re.compile(r"^[+-]?\d+")


@dataclass(frozen=True)
class FileInfo:
    kingdom: str
    timestamp: datetime
    filename: str


@dataclass
class PlayerRecord:
    """One player row from the export, normalized."""
    lord_id: str
    name: str
    division: int = 0
    alliance_id: Optional[str] = None
    alliance_tag: Optional[str] = None
    current_power: int = 0
    power: int = 0
    merits: int = 0
    units_killed: int = 0
    units_dead: int = 0
    units_healed: int = 0
    t1_kill_count: int = 0
    t2_kill_count: int = 0
    t3_kill_count: int = 0
    t4_kill_count: int = 0
    t5_kill_count: int = 0
    building_power: int = 0
    hero_power: int = 0
    legion_power: int = 0
    tech_power: int = 0
    victories: int = 0
    defeats: int = 0
    city_sieges: int = 0
    scouted: int = 0
    helps_given: int = 0
    gold: int = 0
    gold_spent: int = 0
    wood: int = 0
    wood_spent: int = 0
    ore: int = 0
    ore_spent: int = 0
    mana: int = 0
    mana_spent: int = 0
    gems: int = 0
    gems_spent: int = 0
    resources_given: int = 0
    resources_given_count: int = 0
    city_level: int = 0
    faction: Optional[str] = None

    def as_row(self) -> dict:
        return asdict(self)


@dataclass
class ParsedSpreadsheet:
    file_info: FileInfo
    players: list[PlayerRecord] = field(default_factory=list)
    row_count: int = 0
    skipped_rows: int = 0


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------

def cell_text(value) -> str:
    """Render a cell as trimmed text; blanks become ''."""
    if value is None:
        return ""
    if isinstance(value, float):
        if pd.isna(value):
            return ""
        # Excel stores every number as a float; drop the ".0" on whole numbers
        if value.is_integer():
            return str(int(value))
    elif not isinstance(value, str) and pd.isna(value):
        return ""
    return str(value).strip()


def parse_small_int(text: str) -> int:
    """Leading integer of the cell, thousands separators ignored. 0 if none."""
    match = _LEADING_INT.match(text.replace(",", ""))
    return int(match.group()) if match else 0


def parse_big_count(text: str) -> int:
    """Full-precision counter. 0 for blank or unparsable cells."""
    cleaned = text.replace(",", "")
    if not cleaned:
        return 0
    try:
        return int(cleaned)
    except ValueError:
        pass
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return 0
    if not number.is_finite():
        return 0
    return int(number)


# ---------------------------------------------------------------------------
# Filename / workbook
# ---------------------------------------------------------------------------

def parse_filename(filename: str) -> FileInfo:
    """Pull the kingdom id and UTC snapshot time out of the export filename."""
    basename = PurePath(filename.replace("\\", "/")).name
    match = FILENAME_PATTERN.match(basename)
    if not match:
        raise ValidationError(
            f"Invalid filename format. Expected: {EXPECTED_FILENAME}",
            {"filename": filename},
        )

    kingdom, date_part, time_part, _ext = match.groups()
    try:
        timestamp = datetime(
            int(date_part[0:4]),
            int(date_part[4:6]),
            int(date_part[6:8]),
            int(time_part[0:2]),
            int(time_part[2:4]),
            tzinfo=timezone.utc,
        )
    except ValueError as exc:
        raise ValidationError(
            f"Invalid date or time in filename. Expected: {EXPECTED_FILENAME}",
            {"filename": filename},
        ) from exc

    return FileInfo(kingdom=kingdom, timestamp=timestamp, filename=basename)


def select_sheet(sheet_names: list, kingdom: str):
    """Pick the worksheet holding the roster."""
    names = [str(name).strip() for name in sheet_names]
    for candidate in (kingdom, *FALLBACK_SHEET_NAMES):
        if candidate in names:
            return sheet_names[names.index(candidate)]
    if len(sheet_names) > FALLBACK_SHEET_INDEX:
        return sheet_names[FALLBACK_SHEET_INDEX]

    looked_for = ", ".join([kingdom, *FALLBACK_SHEET_NAMES])
    raise ValidationError(
        f"Cannot find data worksheet. Looked for: {looked_for}",
        {"available_sheets": names},
    )


def read_data_sheet(data: bytes, kingdom: str) -> pd.DataFrame:
    try:
        book = pd.ExcelFile(io.BytesIO(data))
    except Exception as exc:
        raise ValidationError(
            "Unable to read the uploaded workbook", {"error": str(exc)}
        ) from exc

    with book:
        sheet_name = select_sheet(book.sheet_names, kingdom)
        logger.debug("Reading worksheet %r", sheet_name)
        try:
            return book.parse(sheet_name, header=None, dtype=object)
        except Exception as exc:
            raise ValidationError(
                f"Unable to read worksheet {sheet_name!r}", {"error": str(exc)}
            ) from exc


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

def build_record(cells) -> PlayerRecord:
    """Map one row (0-based sequence of cells) onto a PlayerRecord."""
    values = {}
    for name, column in COLUMN_MAP.items():
        text = cell_text(cells[column - 1])
        if name in SMALL_INT_FIELDS:
            values[name] = parse_small_int(text)
        elif name in BIG_COUNT_FIELDS:
            values[name] = parse_big_count(text)
        elif name in OPTIONAL_TEXT_FIELDS:
            values[name] = text or None
        else:
            values[name] = text

    if len(values["lord_id"]) > LORD_ID_MAX_LENGTH:
        raise ValueError(f"lord id longer than {LORD_ID_MAX_LENGTH} characters")
    if len(values["name"]) > NAME_MAX_LENGTH:
        raise ValueError(f"name longer than {NAME_MAX_LENGTH} characters")
    for name in BIG_COUNT_FIELDS:
        if abs(values[name]) >= BIG_COUNT_LIMIT:
            raise ValueError(f"{name} does not fit in 38 digits")
    return PlayerRecord(**values)


def extract_players(frame: pd.DataFrame) -> tuple[list[PlayerRecord], int]:
    """Return (records, skipped_row_count). Blank lord-id rows are not counted as skipped."""
    frame = frame.reindex(columns=range(max(COLUMN_MAP.values())))
    lord_id_column = COLUMN_MAP["lord_id"] - 1

    players: list[PlayerRecord] = []
    seen: set[str] = set()
    skipped = 0

    for position, cells in enumerate(frame.itertuples(index=False, name=None)):
        if position == 0:
            continue  # header
        row_number = position + 1

        lord_id = cell_text(cells[lord_id_column])
        if not lord_id:
            continue

        if lord_id in seen:
            logger.warning(
                "Row %d repeats lord id %s; keeping the first occurrence", row_number, lord_id
            )
            skipped += 1
            continue

        try:
            record = build_record(cells)
        except (ValueError, TypeError, IndexError) as exc:
            logger.warning("Error processing row %d for player %s: %s", row_number, lord_id, exc)
            skipped += 1
            continue

        seen.add(lord_id)
        players.append(record)

    return players, skipped


def parse_spreadsheet(data: bytes, filename: str) -> ParsedSpreadsheet:
    """Parse one uploaded export. Raises ValidationError if it is unusable."""
    file_info = parse_filename(filename)
    logger.info("Processing file: %s", file_info.filename)

    frame = read_data_sheet(data, file_info.kingdom)
    players, skipped = extract_players(frame)

    if not players:
        raise ValidationError(
            "No valid player data found in Excel file",
            {"filename": file_info.filename},
        )

    logger.info(
        "Extracted %d valid players from %s (%d rows skipped)",
        len(players), file_info.filename, skipped,
    )
    return ParsedSpreadsheet(
        file_info=file_info,
        players=players,
        row_count=len(players),
        skipped_rows=skipped,
    )
