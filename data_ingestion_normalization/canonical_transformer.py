"""
Canonical Transformer
=====================

Turns flat records (from the tabular decoder or the record repair parser) into
the Category -> ChartSeries -> DataPoint model.

For every record:
- the categorical column supplies the Category name,
- the first date-shaped value supplies the point date (falling back to the
  batch date, computed once per call),
- every other column becomes one ChartSeries with one DataPoint.

Rows that share a category name within one call are coalesced, so the output
never holds more categories than the input holds records.
"""

import datetime as dt
import math
import re
import structlog
import orjson
import pendulum
from pendulum.parsing.exceptions import ParserError
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core_infrastructure.config_manager import get_pipeline_config
from core_infrastructure.models import Category, ChartSeries, DataPoint

logger = structlog.get_logger(__name__)

UNKNOWN_CATEGORY = "Unknown"

_ISO_DAY = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_ISO_MONTH = re.compile(r"^(\d{4})-(\d{1,2})$")
_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")
_LOCALE_DATE = re.compile(r"^(\d{1,2})[/.](\d{1,2})[/.](\d{4}|\d{2})$")
_LEADING_NUMBER = re.compile(
    r"^\s*(?P<sign>[-+])?\s*[$€£¥₹]?\s*(?P<sign2>[-+])?"
    r"(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?|\.\d+)"
)
_SLUG_SEPARATORS = re.compile(r"[\W_]+")


def slugify(text: Any) -> str:
    return _SLUG_SEPARATORS.sub('-', str(text).lower()).strip('-')


def series_id(category_name: str, title: str) -> str:
    """Deterministic series id for a (category, title) pair."""
    return slugify(f"{category_name} {title}") or "series"


def parse_date(value: Any) -> Optional[dt.date]:
    """
    Recognise YYYY-MM-DD, YYYY-MM (day 1), ISO date-times and M/D/YYYY or
    D.M.YYYY locale dates. Native dates pass through. Returns None otherwise.
    """
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    try:
        match = _ISO_DAY.match(text)
        if match:
            return pendulum.date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        match = _ISO_MONTH.match(text)
        if match:
            return pendulum.date(int(match.group(1)), int(match.group(2)), 1)
        if _ISO_DATETIME.match(text):
            return pendulum.parse(text).date()
        match = _LOCALE_DATE.match(text)
        if match:
            first, second, year = int(match.group(1)), int(match.group(2)), int(match.group(3))
            if year < 100:
                year += 2000
            # Month first unless the first field cannot be a month
            month, day = (second, first) if first > 12 else (first, second)
            return pendulum.date(year, month, day)
    except (ValueError, ParserError):
        return None
    return None


def is_numeric_string(value: str) -> bool:
    match = _LEADING_NUMBER.match(value)
    if not match:
        return False
    rest = value[match.end():].strip()
    return rest in ('', '%')


def coerce_numeric(value: Any) -> Any:
    """
    Numeric-looking strings become numbers using the leading numeric part
    ("$1,200.50" -> 1200.5, "12 units" -> 12). Anything else is returned as-is.
    """
    if not isinstance(value, str):
        return value
    match = _LEADING_NUMBER.match(value)
    if not match:
        return value
    number = match.group('number').replace(',', '')
    negative = '-' in (match.group('sign') or '', match.group('sign2') or '')
    result = float(number) if '.' in number else int(number)
    return -result if negative else result


def _is_category_value(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    return bool(text) and not is_numeric_string(text) and parse_date(text) is None


def _usable_value(value: Any) -> Tuple[bool, Any]:
    if value is None:
        return False, None
    if isinstance(value, bool):
        return True, value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return False, None
        return True, value
    if isinstance(value, str):
        if not value.strip():
            return False, None
        return True, coerce_numeric(value)
    if isinstance(value, (dt.date, dt.datetime)):
        return True, value.isoformat()
    if isinstance(value, (dict, list)):
        return True, orjson.dumps(value).decode()
    return True, str(value)


class _CategoryBuilder:
    def __init__(self, name: str, chart_type: str):
        self.name = name
        self.chart_type = chart_type
        self.series: Dict[str, List[DataPoint]] = {}

    def add(self, sid: str, point: DataPoint) -> None:
        self.series.setdefault(sid, []).append(point)

    def build(self) -> Category:
        return Category(
            name=self.name,
            series=tuple(
                ChartSeries(id=sid, chart_type=self.chart_type, points=tuple(points))
                for sid, points in self.series.items()
            ),
        )


class CanonicalTransformer:
    """Record list -> Category list. Never raises on bad records; it skips them."""

    def __init__(self, batch_size: Optional[int] = None,
                 preferred_columns: Optional[Sequence[str]] = None,
                 chart_type: Optional[str] = None):
        config = get_pipeline_config()
        self.batch_size = batch_size or config.transform_batch_size
        self.preferred_columns = [c.lower() for c in (preferred_columns or config.preferred_category_columns)]
        self.chart_type = chart_type or config.default_chart_type

    def categorical_column(self, records: List[Dict[str, Any]]) -> Optional[str]:
        """First column (preferred names first) whose every value is a plain label."""
        if not records:
            return None
        columns = list(records[0].keys())
        rank = {name: i for i, name in enumerate(self.preferred_columns)}
        ordered = sorted(columns, key=lambda c: rank.get(str(c).lower(), len(rank)))
        for column in ordered:
            if all(_is_category_value(record.get(column)) for record in records):
                return column
        return None

    def transform(self, records: Iterable[Any], source_file: str) -> List[Category]:
        fallback_date = pendulum.today().date()
        rows = [record for record in records if isinstance(record, dict) and record]
        if not rows:
            logger.info("transform_no_records", source_file=source_file)
            return []

        category_column = self.categorical_column(rows)
        builders: Dict[str, _CategoryBuilder] = {}
        skipped = 0

        for start in range(0, len(rows), self.batch_size):
            for record in rows[start:start + self.batch_size]:
                try:
                    added = self._transform_record(record, category_column, source_file,
                                                   fallback_date, builders)
                except (TypeError, ValueError) as e:
                    logger.warning("transform_record_failed", source_file=source_file, error=str(e))
                    added = False
                if not added:
                    skipped += 1

        categories = [builder.build() for builder in builders.values() if builder.series]
        logger.info("transform_completed",
                    source_file=source_file,
                    records=len(rows),
                    skipped=skipped,
                    categories=len(categories),
                    category_column=category_column)
        return categories

    def _transform_record(self, record: Dict[str, Any], category_column: Optional[str],
                          source_file: str, fallback_date: dt.date,
                          builders: Dict[str, _CategoryBuilder]) -> bool:
        if category_column is not None:
            label_column = category_column
            name = str(record.get(category_column)).strip()
        else:
            label_column = next(iter(record))
            raw = record.get(label_column)
            name = str(raw).strip() if raw is not None else ''
            name = name or UNKNOWN_CATEGORY

        date_column, point_date = None, fallback_date
        for column, value in record.items():
            if column == label_column:
                continue
            parsed = parse_date(value)
            if parsed is not None:
                date_column, point_date = column, parsed
                break

        points: List[Tuple[str, DataPoint]] = []
        for column, value in record.items():
            if column in (label_column, date_column):
                continue
            usable, cleaned = _usable_value(value)
            if not usable:
                continue
            title = str(column)
            points.append((
                series_id(name, title),
                DataPoint(title=title, value=cleaned, date=point_date, source_file=source_file),
            ))

        if not points:
            return False
        builder = builders.get(name)
        if builder is None:
            builder = builders[name] = _CategoryBuilder(name, self.chart_type)
        for sid, point in points:
            builder.add(sid, point)
        return True


_transformer: Optional[CanonicalTransformer] = None


def get_transformer() -> CanonicalTransformer:
    global _transformer
    if _transformer is None:
        _transformer = CanonicalTransformer()
    return _transformer
