from report_configurator.catalog import create_widget_from_palette, default_data_sources, find_data_source
from report_configurator.models import ChartWidget, DataField, DataSource, GridRegion, ReportConfiguration
from report_configurator.validation import (
    IssueKind,
    chart_requirements,
    compatible_chart_types,
    is_compatible,
    summarize,
    validate,
    validate_region,
    validate_widget,
)

SOURCES = default_data_sources()


def widget(widget_id: str, chart_type: str, source_id: str, column_index: int = 0) -> ChartWidget:
    return create_widget_from_palette(chart_type, find_data_source(source_id, SOURCES), column_index, widget_id)


def configuration(*regions: GridRegion, name: str = "Energy report") -> ReportConfiguration:
    return ReportConfiguration(id="report-1", name=name, regions=list(regions))


def valid_configuration() -> ReportConfiguration:
    return configuration(
        GridRegion(id="r1", column_count=1, order=0, widgets=[widget("w1", "mix-of-parts", "energy-generation")]),
        GridRegion(
            id="r2",
            column_count=2,
            order=1,
            widgets=[
                widget("w2", "trend-over-time", "demand-trend", 0),
                widget("w3", "comparison-with-budget", "cost-comparison", 1),
            ],
        ),
    )


def test_valid_configuration_has_no_errors() -> None:
    report = validate(valid_configuration())
    assert report.valid
    assert report.errors == []
    assert report.warnings == []
    assert summarize(report) == "Configuration is valid"


def test_validation_is_idempotent() -> None:
    broken = valid_configuration()
    broken.name = ""
    broken.regions[1].widgets[1].column_index = 0

    first = validate(broken)
    second = validate(broken)
    assert first.errors == second.errors
    assert not first.valid


def test_identity_and_empty_rules() -> None:
    report = validate(ReportConfiguration(id="", name="  "))
    messages = report.messages()

    assert "The configuration must have a valid id" in messages
    assert "The configuration must have a name" in messages
    assert "The report must contain at least one widget" in messages
    assert {issue.kind for issue in report.errors} == {IssueKind.STRUCTURE}


def test_duplicate_ids_and_orders_are_reported() -> None:
    report = validate(
        configuration(
            GridRegion(id="r1", column_count=1, order=0, widgets=[widget("w1", "mix-of-parts", "energy-generation")]),
            GridRegion(id="r1", column_count=1, order=0, widgets=[widget("w1", "generic-pie", "custom-sales")]),
        )
    )
    messages = report.messages()

    assert "Duplicate region ids: r1" in messages
    assert "Duplicate region order values: 0" in messages
    assert "Duplicate widget ids: w1" in messages


def test_grid_capacity_violations() -> None:
    crowded = GridRegion(
        id="r1",
        column_count=1,
        order=0,
        widgets=[
            widget("w1", "generic-bar", "custom-sales", 0),
            widget("w2", "generic-bar", "custom-sales", 0),
        ],
    )
    out_of_range = GridRegion(id="r2", column_count=2, order=1, widgets=[widget("w3", "generic-bar", "custom-sales", 2)])
    too_wide = GridRegion(id="r3", column_count=4, order=2, widgets=[widget("w4", "generic-bar", "custom-sales", 0)])

    report = validate(configuration(crowded, out_of_range, too_wide))
    placement = [issue for issue in report.errors if issue.kind == IssueKind.PLACEMENT]
    messages = [issue.message for issue in placement]

    assert "Column 0 is occupied by more than one widget" in messages
    assert "Invalid column index 2 for a region with 2 column(s)" in messages
    assert "Region column count must be 1, 2 or 3 (got 4)" in messages
    assert any("cannot hold more than 1 widget(s)" in message for message in messages)
    assert {issue.region_id for issue in placement} == {"r1", "r2", "r3"}


def test_widget_completeness() -> None:
    incomplete = widget("w1", "generic-bar", "custom-sales")
    incomplete.presentation.title = ""
    incomplete.presentation.height = 150
    incomplete.presentation.colors = []
    report = validate(configuration(GridRegion(id="r1", column_count=1, order=0, widgets=[incomplete])))
    messages = report.messages()

    assert "The widget must have a title" in messages
    assert "Widget height must be between 200px and 800px" in messages
    assert "The widget must define at least one color" in messages
    assert all(issue.widget_id == "w1" for issue in report.errors)


def test_missing_data_source_is_a_widget_error_only() -> None:
    orphan = widget("w1", "generic-bar", "custom-sales")
    orphan.data_source = DataSource(id="", name="")
    report = validate(configuration(GridRegion(id="r1", column_count=1, order=0, widgets=[orphan])))

    assert report.messages() == ["The widget must have a data source assigned"]
    assert report.errors[0].kind == IssueKind.WIDGET


def test_incompatible_data_source_is_rejected() -> None:
    mismatched = widget("w1", "mix-of-parts", "demand-trend")
    report = validate(configuration(GridRegion(id="r1", column_count=1, order=0, widgets=[mismatched])))

    assert not report.valid
    assert len(report.errors) == 1
    issue = report.errors[0]
    assert issue.kind == IssueKind.DATA_COMPATIBILITY
    assert "is not compatible" in issue.message
    assert "Demand trend" in issue.message
    assert "mix-of-parts" in issue.message


def test_unknown_chart_type_is_an_error() -> None:
    strange = widget("w1", "generic-bar", "custom-sales")
    strange.chart_type = "radar"
    report = validate(configuration(GridRegion(id="r1", column_count=1, order=0, widgets=[strange])))

    assert report.messages() == ['Unrecognized chart type "radar"']


def test_catalog_lookup_overrides_embedded_snapshot() -> None:
    local = widget("w1", "generic-bar", "custom-sales")
    local.data_source = DataSource(
        id="private-feed",
        name="Private feed",
        fields=[DataField("label", "Label", "text"), DataField("amount", "Amount", "number")],
    )
    config = configuration(GridRegion(id="r1", column_count=1, order=0, widgets=[local]))

    assert validate(config).valid
    report = validate(config, SOURCES)
    assert report.messages() == ['Data source "private-feed" does not exist or is not available']


def test_optional_fields_do_not_count_toward_compatibility() -> None:
    source = DataSource(
        id="thin",
        name="Thin",
        fields=[
            DataField("label", "Label", "text"),
            DataField("amount", "Amount", "number", required=False),
        ],
    )
    assert not is_compatible("generic-bar", source)
    source.fields[1].required = True
    assert is_compatible("generic-bar", source)


def test_compatible_chart_types_per_catalog_source() -> None:
    by_id = {source.id: compatible_chart_types(source) for source in SOURCES}

    assert by_id["energy-generation"] == ["mix-of-parts"]
    assert "trend-over-time" in by_id["demand-trend"]
    assert "generic-pie" in by_id["custom-sales"]
    assert "multi-series" in by_id["regional-consumption"]
    assert "multi-series" not in by_id["custom-sales"]


def test_chart_requirements_lookup() -> None:
    requirements = chart_requirements("mix-of-parts")
    assert [requirement.describe() for requirement in requirements] == ["2+ fraction"]
    assert chart_requirements("radar") is None


def test_crashing_rule_becomes_structure_error() -> None:
    config = valid_configuration()
    config.regions[0].widgets = None

    report = validate(config)
    assert not report.valid
    assert any(issue.kind == IssueKind.STRUCTURE and "could not run" in issue.message for issue in report.errors)


def test_region_and_widget_helpers() -> None:
    region = GridRegion(id="r1", column_count=1, order=0, widgets=[widget("w1", "mix-of-parts", "demand-trend", 3)])

    region_issues = validate_region(region)
    assert [issue.message for issue in region_issues] == ["Invalid column index 3 for a region with 1 column(s)"]

    widget_issues = validate_widget(region.widgets[0], region)
    assert len(widget_issues) == 1
    assert widget_issues[0].region_id == "r1"
    assert "is not compatible" in widget_issues[0].message


def test_summary_counts_errors() -> None:
    report = validate(ReportConfiguration(id="", name=""))
    assert summarize(report) == "3 errors"
    assert report.to_dict()["summary"] == "3 errors"
