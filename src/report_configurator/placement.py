from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from .models import (
    ALLOWED_COLUMN_COUNTS,
    ChartWidget,
    DataSource,
    GridRegion,
    ReportConfiguration,
    WidgetPresentation,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


class PlacementError(ValueError):
    """Raised when a placement call references a cell, region or widget that cannot be used."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(slots=True, frozen=True)
class PlacementCheck:
    allowed: bool
    reason: str | None = None


@dataclass(slots=True, frozen=True)
class PlacementTarget:
    region_id: str
    column_index: int
    label: str = ""


@dataclass(slots=True, frozen=True)
class WidgetPosition:
    region_id: str
    column_index: int
    region_order: int


def invalid_column_reason(column_index: int, column_count: int) -> str:
    return f"Invalid column index {column_index} for a region with {column_count} column(s)"


def occupied_reason(column_index: int) -> str:
    return f"Column {column_index} is already occupied by another widget"


ALREADY_THERE_REASON = "The widget is already at this position"


def region_full_reason(column_count: int) -> str:
    return f"The region already holds the maximum of {column_count} widget(s)"


def _stamp(configuration: ReportConfiguration) -> ReportConfiguration:
    now = utcnow()
    configuration.updated_at = now if now >= configuration.updated_at else configuration.updated_at
    return configuration


def _require_region(configuration: ReportConfiguration, region_id: str, role: str = "Target") -> GridRegion:
    region = configuration.region(region_id)
    if region is None:
        raise PlacementError(f"{role} region not found: {region_id}")
    return region


def find_widget(widget_id: str, configuration: ReportConfiguration) -> WidgetPosition | None:
    for region in configuration.regions:
        widget = region.find(widget_id)
        if widget is not None:
            return WidgetPosition(region_id=region.id, column_index=widget.column_index, region_order=region.order)
    return None


def can_place(
    widget: ChartWidget,
    target_region: GridRegion,
    target_column_index: int,
    configuration: ReportConfiguration,
) -> PlacementCheck:
    if not 0 <= target_column_index < target_region.column_count:
        return PlacementCheck(False, invalid_column_reason(target_column_index, target_region.column_count))

    occupant = target_region.widget_at(target_column_index)
    if occupant is not None and occupant.id != widget.id:
        return PlacementCheck(False, occupied_reason(target_column_index))
    if occupant is not None and occupant.id == widget.id:
        return PlacementCheck(False, ALREADY_THERE_REASON)

    others = [item for item in target_region.widgets if item.id != widget.id]
    if len(others) >= target_region.column_count:
        return PlacementCheck(False, region_full_reason(target_region.column_count))
    return PlacementCheck(True)


def list_valid_targets(widget: ChartWidget, configuration: ReportConfiguration) -> list[PlacementTarget]:
    targets: list[PlacementTarget] = []
    for region in configuration.ordered_regions():
        for column_index in range(region.column_count):
            if can_place(widget, region, column_index, configuration).allowed:
                targets.append(PlacementTarget(region.id, column_index, region.describe()))
    return targets


def place(
    widget: ChartWidget,
    source_region_id: str | None,
    target_region_id: str,
    target_column_index: int,
    configuration: ReportConfiguration,
) -> ReportConfiguration:
    """Put ``widget`` at a cell, taking it out of ``source_region_id`` first.

    A ``None`` source means the widget comes fresh from the palette. A widget
    already sitting in the target cell is replaced, not shifted.
    """
    updated = configuration.clone()
    target = _require_region(updated, target_region_id)
    if not 0 <= target_column_index < target.column_count:
        raise PlacementError(invalid_column_reason(target_column_index, target.column_count))

    if source_region_id is not None:
        source = updated.region(source_region_id)
        if source is not None:
            source.widgets = [item for item in source.widgets if item.id != widget.id]
    target.widgets = [item for item in target.widgets if item.id != widget.id]

    moved = ChartWidget(
        id=widget.id,
        chart_type=widget.chart_type,
        column_index=target_column_index,
        presentation=_copy(widget.presentation),
        data_source=_copy(widget.data_source),
    )
    replaced = False
    for index, item in enumerate(target.widgets):
        if item.column_index == target_column_index:
            if item.id != widget.id:
                logger.info(
                    "widget_replaced",
                    extra={"region_id": target.id, "column_index": target_column_index, "replaced_id": item.id},
                )
            target.widgets[index] = moved
            replaced = True
            break
    if not replaced:
        target.widgets.append(moved)
    return _stamp(updated)


def move_between_regions(
    widget_id: str,
    source_region_id: str,
    target_region_id: str,
    target_column_index: int,
    configuration: ReportConfiguration,
) -> ReportConfiguration:
    source = _require_region(configuration, source_region_id, role="Source")
    widget = source.find(widget_id)
    if widget is None:
        raise PlacementError(f"Widget not found: {widget_id}")
    target = _require_region(configuration, target_region_id)

    check = can_place(widget, target, target_column_index, configuration)
    if not check.allowed:
        logger.info(
            "placement_rejected",
            extra={"widget_id": widget_id, "region_id": target_region_id, "reason": check.reason},
        )
        raise PlacementError(check.reason or "The widget cannot be moved there")
    return place(widget, source_region_id, target_region_id, target_column_index, configuration)


def reorder_widgets_within_region(
    region_id: str,
    ordered_widget_ids: Sequence[str],
    configuration: ReportConfiguration,
) -> ReportConfiguration:
    updated = configuration.clone()
    region = _require_region(updated, region_id, role="Source")
    by_id = {widget.id: widget for widget in region.widgets}

    listed: list[ChartWidget] = []
    for widget_id in ordered_widget_ids:
        widget = by_id.pop(widget_id, None)
        if widget is not None:
            listed.append(widget)
    rest = sorted(by_id.values(), key=lambda widget: widget.column_index)

    region.widgets = listed + rest
    for column_index, widget in enumerate(region.widgets):
        widget.column_index = column_index
    return _stamp(updated)


def swap(widget_id_a: str, widget_id_b: str, configuration: ReportConfiguration) -> ReportConfiguration:
    updated = configuration.clone()
    found: dict[str, tuple[GridRegion, ChartWidget]] = {}
    for region in updated.regions:
        for widget in region.widgets:
            if widget.id in (widget_id_a, widget_id_b) and widget.id not in found:
                found[widget.id] = (region, widget)
    if widget_id_a not in found or widget_id_b not in found:
        raise PlacementError("One or both widgets were not found")

    region_a, widget_a = found[widget_id_a]
    region_b, widget_b = found[widget_id_b]
    if region_a is not region_b:
        _ensure_swappable(region_a, widget_a, widget_b.column_index)
        _ensure_swappable(region_b, widget_b, widget_a.column_index)

    widget_a.column_index, widget_b.column_index = widget_b.column_index, widget_a.column_index
    return _stamp(updated)


def _ensure_swappable(region: GridRegion, widget: ChartWidget, column_index: int) -> None:
    if not 0 <= column_index < region.column_count:
        raise PlacementError(invalid_column_reason(column_index, region.column_count))
    occupant = region.widget_at(column_index)
    if occupant is not None and occupant.id != widget.id:
        raise PlacementError(occupied_reason(column_index))


def remove(widget_id: str, configuration: ReportConfiguration) -> ReportConfiguration:
    updated = configuration.clone()
    for region in updated.regions:
        region.widgets = [widget for widget in region.widgets if widget.id != widget_id]
    return _stamp(updated)


def add_region(
    column_count: int,
    configuration: ReportConfiguration,
    region_id: str | None = None,
) -> ReportConfiguration:
    if column_count not in ALLOWED_COLUMN_COUNTS:
        raise PlacementError(f"Region column count must be 1, 2 or 3 (got {column_count})")
    updated = configuration.clone()
    region_id = region_id or new_id("region")
    if updated.region(region_id) is not None:
        raise PlacementError(f"Region already exists: {region_id}")
    next_order = max((region.order for region in updated.regions), default=-1) + 1
    updated.regions.append(GridRegion(id=region_id, column_count=column_count, order=next_order))
    return _stamp(updated)


def remove_region(region_id: str, configuration: ReportConfiguration) -> ReportConfiguration:
    updated = configuration.clone()
    _require_region(updated, region_id, role="Source")
    remaining = [region for region in updated.ordered_regions() if region.id != region_id]
    for order, region in enumerate(remaining):
        region.order = order
    updated.regions = remaining
    return _stamp(updated)


def reorder_regions(ordered_region_ids: Sequence[str], configuration: ReportConfiguration) -> ReportConfiguration:
    updated = configuration.clone()
    by_id = {region.id: region for region in updated.regions}
    listed = [by_id.pop(region_id) for region_id in ordered_region_ids if region_id in by_id]
    rest = sorted(by_id.values(), key=lambda region: region.order)
    updated.regions = listed + rest
    for order, region in enumerate(updated.regions):
        region.order = order
    return _stamp(updated)


def update_widget(
    widget_id: str,
    configuration: ReportConfiguration,
    presentation: WidgetPresentation | None = None,
    data_source: DataSource | None = None,
    chart_type: str | None = None,
) -> ReportConfiguration:
    updated = configuration.clone()
    for region in updated.regions:
        widget = region.find(widget_id)
        if widget is None:
            continue
        if presentation is not None:
            widget.presentation = _copy(presentation)
        if data_source is not None:
            widget.data_source = _copy(data_source)
        if chart_type is not None:
            widget.chart_type = chart_type
        return _stamp(updated)
    raise PlacementError(f"Widget not found: {widget_id}")


def _copy(value: Any) -> Any:
    return copy.deepcopy(value)
