"""
Merge Engine
============

Folds freshly transformed categories into a dataset's existing categories.
Pure functions over frozen models: inputs are never mutated and a new list is
returned together with a MergeReport.

Rules:
- unknown category: inserted wholesale (when it carries at least one series)
- known category, series id seen before: points replaced when the value kinds
  match, appended (and reported as a conflict) when they differ
- combined charts keyed by id, overwritten on collision
- summary points concatenated, applied chart type overwritten, selected ids unioned

The module also holds the other list-level operations on categories:
combined-chart recomputation, invariant validation and per-file removal.
"""

import structlog
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from core_infrastructure.errors import MergeConflict, ValidationError
from core_infrastructure.models import Category, ChartSeries, CombinedChart, DataPoint, value_kind
from core_infrastructure.observability import MERGE_CONFLICTS

logger = structlog.get_logger(__name__)


@dataclass
class MergeReport:
    inserted: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    appended_series: List[str] = field(default_factory=list)
    conflicts: List[MergeConflict] = field(default_factory=list)
    skipped: int = 0


@dataclass
class RemovalReport:
    """What a per-file removal took away."""
    points_removed: int = 0
    series_pruned: List[str] = field(default_factory=list)
    categories_pruned: List[str] = field(default_factory=list)
    combined_pruned: List[str] = field(default_factory=list)


def _union(existing: Iterable[str], incoming: Iterable[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys([*existing, *incoming]))


def _merge_series(category: str, existing: Tuple[ChartSeries, ...],
                  incoming: Tuple[ChartSeries, ...], report: MergeReport) -> Tuple[ChartSeries, ...]:
    merged = list(existing)
    position = {series.id: i for i, series in enumerate(merged)}

    for series in incoming:
        i = position.get(series.id)
        if i is None:
            position[series.id] = len(merged)
            merged.append(series)
            report.appended_series.append(series.id)
            continue

        current = merged[i]
        current_kind = value_kind(current.points)
        incoming_kind = value_kind(series.points)
        if current_kind is None or incoming_kind is None or current_kind == incoming_kind:
            merged[i] = current.model_copy(update={"points": series.points})
            continue

        conflict = MergeConflict(
            "Series value kinds differ; points appended",
            category=category,
            series_id=series.id,
            existing_kind=current_kind,
            incoming_kind=incoming_kind,
        )
        report.conflicts.append(conflict)
        MERGE_CONFLICTS.inc()
        logger.warning("merge_type_conflict", **conflict.details)
        merged[i] = current.model_copy(update={"points": current.points + series.points})

    return tuple(merged)


def _merge_combined(existing: Tuple[CombinedChart, ...],
                    incoming: Tuple[CombinedChart, ...]) -> Tuple[CombinedChart, ...]:
    merged = list(existing)
    position = {chart.id: i for i, chart in enumerate(merged)}
    for chart in incoming:
        i = position.get(chart.id)
        if i is None:
            position[chart.id] = len(merged)
            merged.append(chart)
        else:
            merged[i] = merged[i].model_copy(update={"series_ids": chart.series_ids, "points": chart.points})
    return tuple(merged)


def _merge_category(existing: Category, incoming: Category, report: MergeReport) -> Category:
    return existing.model_copy(update={
        "series": _merge_series(existing.name, existing.series, incoming.series, report),
        "combined": _merge_combined(existing.combined, incoming.combined),
        "summary": existing.summary + incoming.summary,
        "applied_chart_type": incoming.applied_chart_type or existing.applied_chart_type,
        "selected_ids": _union(existing.selected_ids, incoming.selected_ids),
    })


def merge_categories(existing: List[Category],
                     incoming: List[Category]) -> Tuple[List[Category], MergeReport]:
    """Merge incoming into existing. Series merge is idempotent when no type conflicts occur; summary points accumulate."""
    report = MergeReport()
    merged: Dict[str, Category] = {category.name: category for category in existing}

    for category in incoming:
        if not category.name.strip():
            report.skipped += 1
            logger.warning("merge_category_skipped", reason="blank_name")
            continue

        current = merged.get(category.name)
        if current is None:
            if not category.series:
                report.skipped += 1
                logger.info("merge_category_skipped", category=category.name, reason="no_series")
                continue
            merged[category.name] = category
            report.inserted.append(category.name)
        else:
            merged[category.name] = _merge_category(current, category, report)
            report.updated.append(category.name)

    logger.info("merge_completed",
                existing=len(existing),
                incoming=len(incoming),
                inserted=len(report.inserted),
                updated=len(report.updated),
                conflicts=len(report.conflicts))
    return list(merged.values()), report


def recompute_combined_charts(categories: List[Category]) -> List[Category]:
    """Rebuild every combined chart's points from its current constituents."""
    result = []
    for category in categories:
        if not category.combined:
            result.append(category)
            continue
        by_id = {series.id: series for series in category.series}
        charts = []
        for chart in category.combined:
            points: Tuple[DataPoint, ...] = ()
            for sid in chart.series_ids:
                if sid in by_id:
                    points += by_id[sid].points
            charts.append(chart if points == chart.points else chart.model_copy(update={"points": points}))
        result.append(category.model_copy(update={"combined": tuple(charts)}))
    return result


def validate_categories(categories: List[Category]) -> None:
    """
    Enforce the structural invariants of a category list before it is written:
    unique category names, unique series ids per category, and combined charts
    with at least two constituents that all exist in the same category.
    """
    names: Set[str] = set()
    for category in categories:
        if category.name in names:
            raise ValidationError("Duplicate category name", category=category.name)
        names.add(category.name)

        ids: Set[str] = set()
        for series in category.series:
            if series.id in ids:
                raise ValidationError("Duplicate series id", category=category.name, series_id=series.id)
            ids.add(series.id)

        for chart in category.combined:
            if len(set(chart.series_ids)) < 2:
                raise ValidationError("Combined chart needs at least two series",
                                      category=category.name, chart_id=chart.id)
            missing = [sid for sid in chart.series_ids if sid not in ids]
            if missing:
                raise ValidationError("Combined chart references unknown series",
                                      category=category.name, chart_id=chart.id,
                                      missing=missing)


def referenced_files(categories: List[Category]) -> Set[str]:
    files: Set[str] = set()
    for category in categories:
        for series in category.series:
            files.update(p.source_file for p in series.points if p.source_file)
        files.update(p.source_file for p in category.summary if p.source_file)
    return files


def remove_file_points(categories: List[Category],
                       filename: str) -> Tuple[List[Category], RemovalReport]:
    """
    Drop every point sourced from filename, prune series and categories left
    empty, and drop combined charts that lose constituents below two.
    """
    report = RemovalReport()
    result: List[Category] = []

    def keep(points: Tuple[DataPoint, ...]) -> Tuple[DataPoint, ...]:
        kept = tuple(p for p in points if p.source_file != filename)
        report.points_removed += len(points) - len(kept)
        return kept

    for category in categories:
        series = []
        for item in category.series:
            points = keep(item.points)
            if points:
                series.append(item if len(points) == len(item.points) else item.model_copy(update={"points": points}))
            else:
                report.series_pruned.append(item.id)

        if not series:
            report.categories_pruned.append(category.name)
            continue

        surviving = {item.id for item in series}
        combined = []
        for chart in category.combined:
            constituents = tuple(sid for sid in chart.series_ids if sid in surviving)
            if len(set(constituents)) < 2:
                report.combined_pruned.append(chart.id)
                continue
            combined.append(chart.model_copy(update={"series_ids": constituents}))

        result.append(category.model_copy(update={
            "series": tuple(series),
            "combined": tuple(combined),
            "summary": keep(category.summary),
            "selected_ids": tuple(sid for sid in category.selected_ids
                                  if sid in surviving or sid in {c.id for c in combined}),
        }))

    logger.info("file_points_removed",
                filename=filename,
                points=report.points_removed,
                series_pruned=len(report.series_pruned),
                categories_pruned=len(report.categories_pruned))
    return recompute_combined_charts(result), report
