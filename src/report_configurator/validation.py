from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from .models import (
    ALLOWED_COLUMN_COUNTS,
    MAX_WIDGET_HEIGHT,
    MIN_WIDGET_HEIGHT,
    ChartType,
    ChartWidget,
    DataSource,
    GridRegion,
    ReportConfiguration,
    ValueKind,
)

logger = logging.getLogger(__name__)


class IssueKind(str, Enum):
    STRUCTURE = "structure"
    PLACEMENT = "placement"
    WIDGET = "widget"
    DATA_COMPATIBILITY = "data-compatibility"


@dataclass(slots=True, frozen=True)
class ValidationIssue:
    kind: IssueKind
    message: str
    rule_id: str
    region_id: str | None = None
    widget_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "rule_id": self.rule_id,
            "region_id": self.region_id,
            "widget_id": self.widget_id,
        }


@dataclass(slots=True)
class ValidationReport:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

    def messages(self) -> list[str]:
        return [issue.message for issue in self.errors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "summary": summarize(self),
        }


@dataclass(slots=True, frozen=True)
class FieldRequirement:
    kinds: frozenset[str]
    minimum: int = 1

    def describe(self) -> str:
        kinds = " or ".join(sorted(self.kinds))
        return f"{self.minimum}+ {kinds}"

    def satisfied_by(self, fields: Iterable[Any]) -> bool:
        return sum(1 for item in fields if str(getattr(item.value_kind, "value", item.value_kind)) in self.kinds) >= self.minimum


def _requirement(*kinds: ValueKind, minimum: int = 1) -> FieldRequirement:
    return FieldRequirement(kinds=frozenset(kind.value for kind in kinds), minimum=minimum)


CHART_REQUIREMENTS: dict[str, tuple[FieldRequirement, ...]] = {
    ChartType.MIX_OF_PARTS.value: (_requirement(ValueKind.FRACTION, minimum=2),),
    ChartType.TREND_OVER_TIME.value: (
        _requirement(ValueKind.TEXT, ValueKind.DATE),
        _requirement(ValueKind.NUMBER),
    ),
    ChartType.GENERIC_LINE.value: (
        _requirement(ValueKind.TEXT, ValueKind.DATE),
        _requirement(ValueKind.NUMBER),
    ),
    ChartType.COMPARISON_WITH_BUDGET.value: (
        _requirement(ValueKind.TEXT),
        _requirement(ValueKind.NUMBER),
    ),
    ChartType.GENERIC_BAR.value: (
        _requirement(ValueKind.TEXT),
        _requirement(ValueKind.NUMBER),
    ),
    ChartType.GENERIC_PIE.value: (
        _requirement(ValueKind.TEXT),
        _requirement(ValueKind.NUMBER, ValueKind.FRACTION),
    ),
    ChartType.MULTI_SERIES.value: (_requirement(ValueKind.NUMBER, minimum=2),),
}


RuleCheck = Callable[[ReportConfiguration, "dict[str, DataSource] | None"], list[ValidationIssue]]


@dataclass(slots=True, frozen=True)
class _ValidationRule:
    rule_id: str
    name: str
    check: RuleCheck


def chart_requirements(chart_type: str) -> tuple[FieldRequirement, ...] | None:
    return CHART_REQUIREMENTS.get(str(getattr(chart_type, "value", chart_type)))


def is_compatible(chart_type: str, data_source: DataSource) -> bool:
    requirements = chart_requirements(chart_type)
    if requirements is None:
        return False
    required_fields = data_source.required_fields()
    return all(requirement.satisfied_by(required_fields) for requirement in requirements)


def compatible_chart_types(data_source: DataSource) -> list[str]:
    return [chart_type for chart_type in CHART_REQUIREMENTS if is_compatible(chart_type, data_source)]


def _check_identity(configuration: ReportConfiguration, _: dict[str, DataSource] | None) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if not str(configuration.id or "").strip():
        issues.append(ValidationIssue(IssueKind.STRUCTURE, "The configuration must have a valid id", "identity"))
    if not str(configuration.name or "").strip():
        issues.append(ValidationIssue(IssueKind.STRUCTURE, "The configuration must have a name", "identity"))
    return issues


def _check_not_empty(configuration: ReportConfiguration, _: dict[str, DataSource] | None) -> list[ValidationIssue]:
    if configuration.widget_count() == 0:
        return [
            ValidationIssue(
                IssueKind.STRUCTURE,
                "The report must contain at least one widget",
                "non-empty",
            )
        ]
    return []


def _duplicates(values: Sequence[Any]) -> list[Any]:
    counts = Counter(values)
    return [value for value, count in counts.items() if count > 1]


def _check_uniqueness(configuration: ReportConfiguration, _: dict[str, DataSource] | None) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    duplicate_regions = _duplicates([region.id for region in configuration.regions])
    if duplicate_regions:
        issues.append(
            ValidationIssue(
                IssueKind.STRUCTURE,
                f"Duplicate region ids: {', '.join(map(str, duplicate_regions))}",
                "uniqueness",
            )
        )
    duplicate_orders = _duplicates([region.order for region in configuration.regions])
    if duplicate_orders:
        issues.append(
            ValidationIssue(
                IssueKind.STRUCTURE,
                f"Duplicate region order values: {', '.join(map(str, duplicate_orders))}",
                "uniqueness",
            )
        )
    duplicate_widgets = _duplicates([widget.id for widget in configuration.all_widgets()])
    if duplicate_widgets:
        issues.append(
            ValidationIssue(
                IssueKind.STRUCTURE,
                f"Duplicate widget ids: {', '.join(map(str, duplicate_widgets))}",
                "uniqueness",
            )
        )
    return issues


def _region_capacity_issues(region: GridRegion) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    if region.column_count not in ALLOWED_COLUMN_COUNTS:
        issues.append(
            ValidationIssue(
                IssueKind.PLACEMENT,
                f"Region column count must be 1, 2 or 3 (got {region.column_count})",
                "grid-capacity",
                region_id=region.id,
            )
        )
    if len(region.widgets) > region.column_count:
        issues.append(
            ValidationIssue(
                IssueKind.PLACEMENT,
                (
                    f"A region with {region.column_count} column(s) cannot hold more than "
                    f"{region.column_count} widget(s); it has {len(region.widgets)}"
                ),
                "grid-capacity",
                region_id=region.id,
            )
        )
    for column_index in _duplicates([widget.column_index for widget in region.widgets]):
        issues.append(
            ValidationIssue(
                IssueKind.PLACEMENT,
                f"Column {column_index} is occupied by more than one widget",
                "grid-capacity",
                region_id=region.id,
            )
        )
    for widget in region.widgets:
        if not 0 <= widget.column_index < region.column_count:
            issues.append(
                ValidationIssue(
                    IssueKind.PLACEMENT,
                    f"Invalid column index {widget.column_index} for a region with {region.column_count} column(s)",
                    "grid-capacity",
                    region_id=region.id,
                    widget_id=widget.id,
                )
            )
    return issues


def _check_grid_capacity(configuration: ReportConfiguration, _: dict[str, DataSource] | None) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for region in configuration.regions:
        issues.extend(_region_capacity_issues(region))
    return issues


def _widget_completeness_issues(widget: ChartWidget, region_id: str | None) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    presentation = widget.presentation

    def issue(message: str) -> ValidationIssue:
        return ValidationIssue(IssueKind.WIDGET, message, "widget-completeness", region_id=region_id, widget_id=widget.id)

    if not str(presentation.title or "").strip():
        issues.append(issue("The widget must have a title"))
    if not MIN_WIDGET_HEIGHT <= presentation.height <= MAX_WIDGET_HEIGHT:
        issues.append(issue(f"Widget height must be between {MIN_WIDGET_HEIGHT}px and {MAX_WIDGET_HEIGHT}px"))
    if not presentation.colors:
        issues.append(issue("The widget must define at least one color"))
    if not str(widget.data_source.id or "").strip():
        issues.append(issue("The widget must have a data source assigned"))
    return issues


def _check_widget_completeness(configuration: ReportConfiguration, _: dict[str, DataSource] | None) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for region in configuration.regions:
        for widget in region.widgets:
            issues.extend(_widget_completeness_issues(widget, region.id))
    return issues


def _compatibility_issue(
    widget: ChartWidget,
    region_id: str | None,
    catalog: dict[str, DataSource] | None,
) -> ValidationIssue | None:
    source_id = str(widget.data_source.id or "").strip()
    if not source_id:
        return None

    def issue(message: str) -> ValidationIssue:
        return ValidationIssue(
            IssueKind.DATA_COMPATIBILITY,
            message,
            "chart-data-compatibility",
            region_id=region_id,
            widget_id=widget.id,
        )

    if catalog is not None:
        data_source = catalog.get(source_id)
        if data_source is None:
            return issue(f'Data source "{source_id}" does not exist or is not available')
    else:
        data_source = widget.data_source

    chart_type = str(getattr(widget.chart_type, "value", widget.chart_type))
    requirements = chart_requirements(chart_type)
    if requirements is None:
        return issue(f'Unrecognized chart type "{chart_type}"')

    required_fields = data_source.required_fields()
    missing = [requirement for requirement in requirements if not requirement.satisfied_by(required_fields)]
    if missing:
        needed = ", ".join(requirement.describe() for requirement in requirements)
        return issue(
            f'Data source "{data_source.name or data_source.id}" is not compatible with chart type '
            f'"{chart_type}" (required fields: {needed})'
        )
    return None


def _check_compatibility(
    configuration: ReportConfiguration,
    catalog: dict[str, DataSource] | None,
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    for region in configuration.regions:
        for widget in region.widgets:
            found = _compatibility_issue(widget, region.id, catalog)
            if found is not None:
                issues.append(found)
    return issues


RULES: tuple[_ValidationRule, ...] = (
    _ValidationRule("identity", "Configuration identity", _check_identity),
    _ValidationRule("non-empty", "Report contains widgets", _check_not_empty),
    _ValidationRule("uniqueness", "Unique region and widget ids", _check_uniqueness),
    _ValidationRule("grid-capacity", "Region column limits", _check_grid_capacity),
    _ValidationRule("widget-completeness", "Required widget settings", _check_widget_completeness),
    _ValidationRule("chart-data-compatibility", "Chart type and data source compatibility", _check_compatibility),
)


def _catalog(known_data_sources: Iterable[DataSource] | None) -> dict[str, DataSource] | None:
    if known_data_sources is None:
        return None
    return {source.id: source for source in known_data_sources}


def validate(
    configuration: ReportConfiguration,
    known_data_sources: Iterable[DataSource] | None = None,
) -> ValidationReport:
    """Run every rule against ``configuration`` and collect the findings.

    Rules never short-circuit each other. A rule that crashes on a malformed
    configuration is reported as a structure error instead of raising. When
    ``known_data_sources`` is given, widget data sources are resolved by id in
    that catalog; otherwise the snapshot embedded in each widget is used.
    """
    report = ValidationReport()
    try:
        catalog = _catalog(known_data_sources)
    except Exception as exc:
        report.errors.append(ValidationIssue(IssueKind.STRUCTURE, f"Unreadable data source catalog: {exc}", "catalog"))
        catalog = None

    for rule in RULES:
        try:
            report.errors.extend(rule.check(configuration, catalog))
        except Exception as exc:
            report.errors.append(
                ValidationIssue(
                    IssueKind.STRUCTURE,
                    f'Validation rule "{rule.name}" could not run: {exc}',
                    rule.rule_id,
                )
            )

    if not report.valid:
        logger.info(
            "configuration_invalid",
            extra={
                "config_id": getattr(configuration, "id", None),
                "error_count": len(report.errors),
                "rules": sorted({issue.rule_id for issue in report.errors}),
            },
        )
    return report


def validate_region(region: GridRegion) -> list[ValidationIssue]:
    try:
        return _region_capacity_issues(region)
    except Exception as exc:
        return [ValidationIssue(IssueKind.PLACEMENT, f"Region could not be validated: {exc}", "grid-capacity")]


def validate_widget(
    widget: ChartWidget,
    region: GridRegion | None = None,
    known_data_sources: Iterable[DataSource] | None = None,
) -> list[ValidationIssue]:
    region_id = region.id if region is not None else None
    try:
        issues = _widget_completeness_issues(widget, region_id)
        found = _compatibility_issue(widget, region_id, _catalog(known_data_sources))
    except Exception as exc:
        return [ValidationIssue(IssueKind.WIDGET, f"Widget could not be validated: {exc}", "widget-completeness")]
    if found is not None:
        issues.append(found)
    return issues


def summarize(report: ValidationReport) -> str:
    if report.valid and not report.warnings:
        return "Configuration is valid"
    parts: list[str] = []
    if report.errors:
        count = len(report.errors)
        parts.append(f"{count} error{'s' if count != 1 else ''}")
    if report.warnings:
        count = len(report.warnings)
        parts.append(f"{count} warning{'s' if count != 1 else ''}")
    return ", ".join(parts)
