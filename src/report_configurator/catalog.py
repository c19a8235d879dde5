from __future__ import annotations

from typing import Any, Protocol

from .models import (
    ChartType,
    ChartWidget,
    DataField,
    DataSource,
    DataSourceCategory,
    FieldRole,
    GridRegion,
    ReportConfiguration,
    Scope,
    ValueKind,
    WidgetPresentation,
    new_id,
    utcnow,
)

PALETTE_DEFAULTS: dict[str, dict[str, Any]] = {
    ChartType.MIX_OF_PARTS.value: {
        "title": "Generation mix",
        "colors": ["#FF7A00", "#00A3FF", "#00D4AA", "#FFB800"],
    },
    ChartType.TREND_OVER_TIME.value: {
        "title": "Demand trend",
        "colors": ["#FF7A00", "#00A3FF"],
    },
    ChartType.COMPARISON_WITH_BUDGET.value: {
        "title": "Cost comparison",
        "colors": ["#FF7A00", "#00A3FF", "#00D4AA"],
    },
    ChartType.MULTI_SERIES.value: {
        "title": "Multi-series chart",
        "colors": ["#FF7A00", "#00A3FF", "#00D4AA", "#FFB800", "#FF4757"],
    },
    ChartType.GENERIC_BAR.value: {
        "title": "Bar chart",
        "colors": ["#FF7A00", "#00A3FF", "#00D4AA", "#FFB800"],
    },
    ChartType.GENERIC_LINE.value: {
        "title": "Line chart",
        "colors": ["#FF7A00", "#00A3FF"],
    },
    ChartType.GENERIC_PIE.value: {
        "title": "Pie chart",
        "colors": ["#FF7A00", "#00A3FF", "#00D4AA", "#FFB800", "#FF4757"],
    },
}

DEFAULT_WIDGET_HEIGHT = 300


def _field(
    field_id: str,
    name: str,
    kind: ValueKind,
    role: FieldRole | None = None,
    required: bool = True,
) -> DataField:
    return DataField(
        id=field_id,
        name=name,
        value_kind=kind.value,
        required=required,
        role=role.value if role else None,
    )


def default_data_sources() -> list[DataSource]:
    return [
        DataSource(
            id="energy-generation",
            name="Energy generation",
            category=DataSourceCategory.ENERGY_GENERATION.value,
            fields=[
                _field("thermal", "Thermal", ValueKind.FRACTION, FieldRole.SHARE),
                _field("hydraulic", "Hydraulic", ValueKind.FRACTION, FieldRole.SHARE),
                _field("nuclear", "Nuclear", ValueKind.FRACTION, FieldRole.SHARE),
                _field("renewable", "Renewable", ValueKind.FRACTION, FieldRole.SHARE),
            ],
            sample_rows=[{"thermal": 45, "hydraulic": 25, "nuclear": 15, "renewable": 15}],
        ),
        DataSource(
            id="demand-trend",
            name="Demand trend",
            category=DataSourceCategory.DEMAND.value,
            fields=[
                _field("month", "Month", ValueKind.TEXT, FieldRole.TIME),
                _field("demand", "Demand (MWh)", ValueKind.NUMBER, FieldRole.PRIMARY_METRIC),
                _field("variation", "Variation (%)", ValueKind.FRACTION, required=False),
            ],
            sample_rows=[
                {"month": "Jan", "demand": 1200, "variation": 5.2},
                {"month": "Feb", "demand": 1150, "variation": -2.1},
                {"month": "Mar", "demand": 1300, "variation": 8.7},
                {"month": "Apr", "demand": 1250, "variation": 3.5},
                {"month": "May", "demand": 1180, "variation": -1.8},
                {"month": "Jun", "demand": 1350, "variation": 7.2},
            ],
        ),
        DataSource(
            id="cost-comparison",
            name="Cost comparison",
            category=DataSourceCategory.COST.value,
            fields=[
                _field("category", "Category", ValueKind.TEXT, FieldRole.CATEGORY),
                _field("cost", "Cost (USD/MWh)", ValueKind.NUMBER, FieldRole.PRIMARY_METRIC),
                _field("budget", "Budget", ValueKind.NUMBER, FieldRole.BUDGET_METRIC, required=False),
            ],
            sample_rows=[
                {"category": "Wholesale", "cost": 45.2, "budget": 50.0},
                {"category": "Surplus", "cost": 38.7, "budget": 40.0},
                {"category": "Renewable", "cost": 42.1, "budget": 45.0},
            ],
        ),
        DataSource(
            id="efficiency-metrics",
            name="Efficiency metrics",
            category=DataSourceCategory.EFFICIENCY.value,
            fields=[
                _field("metric", "Metric", ValueKind.TEXT, FieldRole.CATEGORY),
                _field("value", "Value", ValueKind.NUMBER, FieldRole.PRIMARY_METRIC),
                _field("target", "Target", ValueKind.NUMBER, FieldRole.BUDGET_METRIC, required=False),
            ],
            sample_rows=[
                {"metric": "Energy efficiency", "value": 85.5, "target": 90.0},
                {"metric": "Load factor", "value": 72.3, "target": 75.0},
                {"metric": "Availability", "value": 94.8, "target": 95.0},
            ],
        ),
        DataSource(
            id="custom-sales",
            name="Custom data - Sales",
            category=DataSourceCategory.CUSTOM.value,
            fields=[
                _field("category", "Category", ValueKind.TEXT, FieldRole.CATEGORY),
                _field("value", "Value", ValueKind.NUMBER, FieldRole.PRIMARY_METRIC),
            ],
            sample_rows=[
                {"category": "Q1", "value": 120},
                {"category": "Q2", "value": 150},
                {"category": "Q3", "value": 180},
                {"category": "Q4", "value": 200},
            ],
        ),
        DataSource(
            id="regional-consumption",
            name="Regional consumption",
            category=DataSourceCategory.CUSTOM.value,
            fields=[
                _field("region", "Region", ValueKind.TEXT, FieldRole.CATEGORY),
                _field("residential", "Residential (MWh)", ValueKind.NUMBER, FieldRole.PRIMARY_METRIC),
                _field("industrial", "Industrial (MWh)", ValueKind.NUMBER),
            ],
            sample_rows=[
                {"region": "North", "residential": 450, "industrial": 610},
                {"region": "Center", "residential": 680, "industrial": 720},
                {"region": "South", "residential": 320, "industrial": 290},
            ],
        ),
    ]


def find_data_source(data_source_id: str, data_sources: list[DataSource]) -> DataSource | None:
    return next((source for source in data_sources if source.id == data_source_id), None)


def create_widget_from_palette(
    chart_type: str,
    data_source: DataSource,
    column_index: int = 0,
    widget_id: str | None = None,
) -> ChartWidget:
    chart_key = str(getattr(chart_type, "value", chart_type))
    defaults = PALETTE_DEFAULTS.get(chart_key, {"title": "New chart", "colors": ["#FF7A00"]})
    return ChartWidget(
        id=widget_id or new_id(chart_key),
        chart_type=chart_key,
        column_index=column_index,
        presentation=WidgetPresentation(
            title=defaults["title"],
            height=DEFAULT_WIDGET_HEIGHT,
            colors=list(defaults["colors"]),
        ),
        data_source=data_source,
    )


def palette() -> list[dict[str, Any]]:
    return [
        {"chart_type": chart_type, "title": defaults["title"], "colors": list(defaults["colors"])}
        for chart_type, defaults in PALETTE_DEFAULTS.items()
    ]


class DefaultReportProvider(Protocol):
    def default_report(self, scope: Scope) -> ReportConfiguration: ...


class BuiltinDefaultReportProvider:
    """Built-in report served once the client and global scopes are both exhausted."""

    def __init__(self, data_sources: list[DataSource] | None = None) -> None:
        self.data_sources = data_sources if data_sources is not None else default_data_sources()

    def default_report(self, scope: Scope) -> ReportConfiguration:
        sources = {source.id: source for source in self.data_sources}
        layout = [
            (1, [(ChartType.MIX_OF_PARTS.value, "energy-generation")]),
            (
                2,
                [
                    (ChartType.TREND_OVER_TIME.value, "demand-trend"),
                    (ChartType.COMPARISON_WITH_BUDGET.value, "cost-comparison"),
                ],
            ),
        ]
        regions: list[GridRegion] = []
        for order, (column_count, cells) in enumerate(layout):
            widgets = [
                create_widget_from_palette(chart_type, sources[source_id], column_index, widget_id=f"default-{chart_type}")
                for column_index, (chart_type, source_id) in enumerate(cells)
                if source_id in sources
            ]
            regions.append(
                GridRegion(id=f"default-region-{order + 1}", column_count=column_count, order=order, widgets=widgets)
            )
        now = utcnow()
        return ReportConfiguration(
            id=f"default-{scope.label}",
            name="Default energy report",
            owner_scope=scope,
            regions=regions,
            created_at=now,
            updated_at=now,
            is_active=True,
        )
