"""
Canonical chart-data model
==========================

Dataset -> Category -> ChartSeries / CombinedChart -> DataPoint, plus the
FileRecord and DataRef bookkeeping types. All value types are frozen pydantic
models; collections are tuples so merges work copy-on-write.

Field names serialize in camelCase. Reads also accept the compact aliases
written by older payloads (cat/data/comb/sum/chart/ids, i/d, t/v/d).
"""

import datetime as dt
from typing import Any, List, Literal, Optional, Tuple, Union

import orjson
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
)

PointValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]

DEFAULT_CHART_TYPE = "Area"


class DataPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(
        validation_alias=AliasChoices("title", "t"),
        serialization_alias="title",
    )
    value: PointValue = Field(
        validation_alias=AliasChoices("value", "v"),
        serialization_alias="value",
    )
    date: dt.date = Field(
        validation_alias=AliasChoices("date", "d"),
        serialization_alias="date",
    )
    source_file: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("source_file", "fileName", "source", "f"),
        serialization_alias="fileName",
    )


class ChartSeries(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "i"), serialization_alias="id")
    chart_type: str = Field(
        default=DEFAULT_CHART_TYPE,
        validation_alias=AliasChoices("chart_type", "chartType", "type"),
        serialization_alias="chartType",
    )
    points: Tuple[DataPoint, ...] = Field(
        default=(),
        validation_alias=AliasChoices("points", "data", "d"),
        serialization_alias="data",
    )
    chart_type_changed: bool = Field(
        default=False,
        validation_alias=AliasChoices("chart_type_changed", "isChartTypeChanged"),
        serialization_alias="isChartTypeChanged",
    )


class CombinedChart(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "i"), serialization_alias="id")
    series_ids: Tuple[str, ...] = Field(
        validation_alias=AliasChoices("series_ids", "chartIds", "c"),
        serialization_alias="chartIds",
    )
    chart_type: str = Field(
        default=DEFAULT_CHART_TYPE,
        validation_alias=AliasChoices("chart_type", "chartType", "type"),
        serialization_alias="chartType",
    )
    points: Tuple[DataPoint, ...] = Field(
        default=(),
        validation_alias=AliasChoices("points", "data", "d"),
        serialization_alias="data",
    )


class Category(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("name", "categoryName", "cat"),
        serialization_alias="categoryName",
    )
    series: Tuple[ChartSeries, ...] = Field(
        default=(),
        validation_alias=AliasChoices("series", "mainData", "data"),
        serialization_alias="mainData",
    )
    combined: Tuple[CombinedChart, ...] = Field(
        default=(),
        validation_alias=AliasChoices("combined", "combinedData", "comb"),
        serialization_alias="combinedData",
    )
    summary: Tuple[DataPoint, ...] = Field(
        default=(),
        validation_alias=AliasChoices("summary", "summaryData", "sum"),
        serialization_alias="summaryData",
    )
    applied_chart_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("applied_chart_type", "appliedChartType", "chart"),
        serialization_alias="appliedChartType",
    )
    selected_ids: Tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices("selected_ids", "checkedIds", "ids"),
        serialization_alias="checkedIds",
    )

    def series_by_id(self, series_id: str) -> Optional[ChartSeries]:
        for series in self.series:
            if series.id == series_id:
                return series
        return None


class MonitoringState(BaseModel):
    """Sync state of a cloud-origin file."""
    model_config = ConfigDict(frozen=True)

    status: Literal["active", "expired"] = "active"
    expires_at: Optional[dt.datetime] = None
    folder_id: Optional[str] = None


class FileRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_ref: str
    filename: str = Field(min_length=1)
    origin: Literal["local", "cloud"] = "local"
    chunked: bool = False
    chunk_count: int = 1
    content_type: Optional[str] = None
    size_bytes: int = 0
    last_update: dt.datetime
    monitoring: Optional[MonitoringState] = None


class DataRef(BaseModel):
    """Where a dataset's category list lives."""
    model_config = ConfigDict(frozen=True)

    storage: Literal["inline", "external"]
    blob_id: Optional[str] = None
    inline_payload: Optional[str] = None
    filename: str
    chunked: bool = False
    size_bytes: int
    stored_bytes: int
    last_update: dt.datetime


class Dataset(BaseModel):
    """Per-owner aggregate record. The category list itself is reached via data_ref."""
    model_config = ConfigDict(frozen=True)

    owner_id: str = Field(min_length=1)
    dataset_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    data_ref: Optional[DataRef] = None
    files: Tuple[FileRecord, ...] = ()
    created_at: dt.datetime
    updated_at: dt.datetime

    def file_named(self, filename: str) -> Optional[FileRecord]:
        for record in self.files:
            if record.filename == filename:
                return record
        return None


CATEGORY_LIST = TypeAdapter(List[Category])


def categories_to_jsonable(categories: List[Category]) -> List[Any]:
    return [category.model_dump(mode="json", by_alias=True) for category in categories]


def serialize_categories(categories: List[Category]) -> bytes:
    """Canonical byte encoding of a category list; the size budget is measured on this."""
    return orjson.dumps(categories_to_jsonable(categories))


def serialized_size(category: Category) -> int:
    return len(orjson.dumps(category.model_dump(mode="json", by_alias=True)))


def parse_categories(raw: Any) -> List[Category]:
    """Validate decoded JSON into categories. Raises pydantic.ValidationError."""
    return CATEGORY_LIST.validate_python(raw)


def value_kind(points: Tuple[DataPoint, ...]) -> Optional[str]:
    """'numeric', 'string', 'mixed' or None for an empty point list."""
    kinds = set()
    for point in points:
        if isinstance(point.value, bool):
            kinds.add("boolean")
        elif isinstance(point.value, (int, float)):
            kinds.add("numeric")
        else:
            kinds.add("string")
    if not kinds:
        return None
    if len(kinds) > 1:
        return "mixed"
    return kinds.pop()
