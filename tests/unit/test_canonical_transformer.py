"""
Unit Tests for the Canonical Transformer

Tests:
- Category / date / series derivation
- Date and number normalization helpers
- Row coalescing and record skipping
- Property: series ids are reproducible from (category, title)
"""

import datetime as dt

import pendulum
import pytest
from hypothesis import given, settings, strategies as st

from data_ingestion_normalization.canonical_transformer import (
    CanonicalTransformer,
    coerce_numeric,
    parse_date,
    series_id,
    slugify,
)


class TestHelpers:
    """Slugs, dates and numbers"""

    def test_series_id_is_slug_of_category_and_title(self):
        assert series_id("West", "Sales") == "west-sales"
        assert series_id("North America", "Profit ($)") == "north-america-profit"

    def test_slugify_collapses_separators(self):
        assert slugify("  Q1 -- Revenue__Total ") == "q1-revenue-total"

    @pytest.mark.parametrize("value, expected", [
        ("2024-03-01", dt.date(2024, 3, 1)),
        ("2024-03", dt.date(2024, 3, 1)),
        ("2024-03-05T10:30:00Z", dt.date(2024, 3, 5)),
        ("3/4/2024", dt.date(2024, 3, 4)),
        ("25.12.2023", dt.date(2023, 12, 25)),
        ("1/2/24", dt.date(2024, 1, 2)),
        (dt.datetime(2024, 5, 6, 7, 8), dt.date(2024, 5, 6)),
        (dt.date(2020, 1, 1), dt.date(2020, 1, 1)),
    ])
    def test_parse_date_formats(self, value, expected):
        assert parse_date(value) == expected

    @pytest.mark.parametrize("value", ["West", "2024-13-45", "12", 42, None, "13/13/2024"])
    def test_parse_date_rejects(self, value):
        assert parse_date(value) is None

    @pytest.mark.parametrize("value, expected", [
        ("100", 100),
        ("$1,200.50", 1200.5),
        ("-3.5", -3.5),
        ("12 units", 12),
        ("-$40", -40),
        ("n/a", "n/a"),
        (7, 7),
    ])
    def test_coerce_numeric(self, value, expected):
        assert coerce_numeric(value) == expected


class TestTransform:
    """Record list -> categories"""

    def setup_method(self):
        self.transformer = CanonicalTransformer(batch_size=2)

    def test_transform_example(self):
        """Region/Sales/Date row becomes category West with one sales point"""
        # Given: one record from q1.csv
        records = [{"Region": "West", "Sales": 100, "Date": "2024-03-01"}]

        # When: transforming
        categories = self.transformer.transform(records, "q1.csv")

        # Then: one category, one series, the date column is not a series
        assert len(categories) == 1
        west = categories[0]
        assert west.name == "West"
        assert [s.id for s in west.series] == ["west-sales"]
        point = west.series[0].points[0]
        assert point.title == "Sales"
        assert point.value == 100
        assert point.date == dt.date(2024, 3, 1)
        assert point.source_file == "q1.csv"
        assert west.series[0].chart_type == "Area"

    def test_preferred_column_names_the_category(self):
        records = [{"Amount": "5", "Notes": "Rent", "Region": "West"}]

        categories = self.transformer.transform(records, "f.csv")

        assert categories[0].name == "Rent"
        assert {s.id for s in categories[0].series} == {"rent-amount", "rent-region"}

    def test_numeric_strings_are_coerced(self):
        categories = self.transformer.transform([{"Region": "West", "Sales": "$1,000"}], "f.csv")

        assert categories[0].series[0].points[0].value == 1000

    def test_fallback_date_is_today(self):
        categories = self.transformer.transform([{"Region": "West", "Sales": 1}], "f.csv")

        assert categories[0].series[0].points[0].date == pendulum.today().date()

    def test_rows_with_same_category_are_coalesced(self):
        """Batches do not split a category; points accumulate in row order"""
        records = [
            {"Region": "West", "Sales": 1, "Date": "2024-01-01"},
            {"Region": "East", "Sales": 2, "Date": "2024-01-01"},
            {"Region": "West", "Sales": 3, "Date": "2024-02-01"},
        ]

        categories = self.transformer.transform(records, "f.csv")

        assert [c.name for c in categories] == ["West", "East"]
        assert [p.value for p in categories[0].series[0].points] == [1, 3]

    def test_blank_and_nan_values_are_skipped(self):
        records = [{"Region": "West", "Sales": 10, "Returns": "", "Cost": float("nan"), "Tax": None}]

        categories = self.transformer.transform(records, "f.csv")

        assert [s.id for s in categories[0].series] == ["west-sales"]

    def test_records_without_series_are_skipped(self):
        records = [{"Region": "West", "Date": "2024-01-01"}, "not a record", {}]

        assert self.transformer.transform(records, "f.csv") == []

    def test_no_categorical_column_uses_first_column(self):
        """All-numeric rows: the first column's value names the category and is not a series"""
        records = [{"Year": 2023, "Sales": 10}, {"Year": 2024, "Sales": 12}]

        categories = self.transformer.transform(records, "f.csv")

        assert [c.name for c in categories] == ["2023", "2024"]
        assert [s.id for s in categories[0].series] == ["2023-sales"]

    @given(st.lists(
        st.fixed_dictionaries({
            "Region": st.sampled_from(["West", "East", "North America", "São Paulo"]),
            "Sales": st.integers(min_value=-10_000, max_value=10_000),
            "Product": st.sampled_from(["Widgets", "Gadgets", "Tools & Parts"]),
        }),
        min_size=1, max_size=30,
    ))
    @settings(max_examples=50)
    def test_series_ids_reproducible_hypothesis(self, records):
        """Every series id derives from (category, title); categories never outnumber records"""
        categories = CanonicalTransformer().transform(records, "prop.csv")

        assert len(categories) <= len(records)
        for category in categories:
            ids = [s.id for s in category.series]
            assert len(ids) == len(set(ids))
            for series in category.series:
                assert series.id == series_id(category.name, series.points[0].title)
