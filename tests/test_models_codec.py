import json
from datetime import datetime, timezone

import pytest

from report_configurator.catalog import create_widget_from_palette, default_data_sources, find_data_source
from report_configurator.codec import DecodeError, deserialize_configuration, dumps, loads, serialize_configuration
from report_configurator.models import (
    GLOBAL,
    DataSource,
    FieldRole,
    GridRegion,
    ReportConfiguration,
    Scope,
    empty_configuration,
)


def build_configuration(scope: Scope = GLOBAL) -> ReportConfiguration:
    sources = default_data_sources()
    mix = create_widget_from_palette("mix-of-parts", find_data_source("energy-generation", sources), 0, "w-mix")
    trend = create_widget_from_palette("trend-over-time", find_data_source("demand-trend", sources), 1, "w-trend")
    stamp = datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
    return ReportConfiguration(
        id="report-1",
        name="Monthly energy",
        owner_scope=scope,
        regions=[
            GridRegion(id="r1", column_count=1, order=0, widgets=[mix]),
            GridRegion(id="r2", column_count=2, order=1, widgets=[trend]),
        ],
        created_at=stamp,
        updated_at=stamp,
    )


def test_scope_labels_and_storage_keys() -> None:
    assert GLOBAL.label == "global"
    assert GLOBAL.storage_key == "config:global"

    client = Scope.client("acme")
    assert client.label == "client:acme"
    assert client.storage_key == "config:client:acme"
    assert Scope.from_label("client:acme") == client
    assert Scope.from_label("global") is GLOBAL


def test_scope_rejects_bad_labels() -> None:
    with pytest.raises(ValueError, match="unrecognized scope label"):
        Scope.from_label("tenant:acme")
    with pytest.raises(ValueError, match="non-empty client id"):
        Scope.client("  ")


def test_clone_is_deep() -> None:
    original = build_configuration()
    cloned = original.clone()
    cloned.regions[0].widgets[0].presentation.title = "Changed"
    cloned.regions[0].widgets[0].data_source.fields.clear()

    assert original.regions[0].widgets[0].presentation.title == "Generation mix"
    assert original.regions[0].widgets[0].data_source.fields


def test_clone_with_changes_keeps_original() -> None:
    original = build_configuration()
    renamed = original.clone(name="Renamed", owner_scope=Scope.client("acme"))

    assert renamed.name == "Renamed"
    assert renamed.owner_scope.client_id == "acme"
    assert original.name == "Monthly energy"
    assert original.owner_scope is GLOBAL


def test_serialized_dates_are_tagged() -> None:
    text = serialize_configuration(build_configuration())
    raw = json.loads(text)

    assert raw["created_at"] == {"__type": "Date", "value": "2024-03-01T12:30:00Z"}
    assert raw["updated_at"]["__type"] == "Date"


def test_round_trip_preserves_configuration() -> None:
    configuration = build_configuration(Scope.client("acme"))
    restored = deserialize_configuration(serialize_configuration(configuration))

    assert restored == configuration
    assert isinstance(restored.updated_at, datetime)
    assert restored.updated_at.tzinfo is not None


def test_loads_revives_nested_dates() -> None:
    payload = loads(dumps({"items": [{"at": datetime(2024, 1, 2, tzinfo=timezone.utc)}]}))
    assert payload["items"][0]["at"] == datetime(2024, 1, 2, tzinfo=timezone.utc)


def test_deserialize_rejects_malformed_text() -> None:
    with pytest.raises(DecodeError):
        deserialize_configuration("{not json")
    with pytest.raises(DecodeError):
        deserialize_configuration("[1, 2, 3]")
    with pytest.raises(DecodeError):
        deserialize_configuration(json.dumps({"id": "x", "regions": [{"column_count": 2}]}))
    with pytest.raises(DecodeError):
        deserialize_configuration(json.dumps({"id": "x", "regions": [{"id": "R1", "column_count": 1, "widgets": ["w"]}]}))


def test_unknown_chart_types_survive_conversion() -> None:
    payload = build_configuration().to_dict()
    payload["regions"][0]["widgets"][0]["chart_type"] = "radar"

    restored = ReportConfiguration.from_dict(payload)
    assert restored.regions[0].widgets[0].chart_type == "radar"


def test_field_roles_resolve_by_tag() -> None:
    cost = find_data_source("cost-comparison", default_data_sources())

    assert cost.field_for_role(FieldRole.BUDGET_METRIC).id == "budget"
    assert cost.field_for_role("category").id == "category"
    assert cost.field_for_role(FieldRole.SHARE) is None
    assert [item.id for item in cost.required_fields()] == ["category", "cost"]


def test_data_source_from_dict_defaults() -> None:
    source = DataSource.from_dict({"id": "adhoc", "fields": [{"id": "v", "value_kind": "number"}]})

    assert source.category == "custom"
    assert source.fields[0].name == "v"
    assert source.fields[0].required is True
    assert source.fields[0].role is None


def test_empty_configuration_names_follow_scope() -> None:
    assert empty_configuration().name == "Global report"
    client = empty_configuration(Scope.client("acme"))
    assert client.name == "Custom report - Client acme"
    assert client.regions == []
    assert client.owner_scope == Scope.client("acme")


def test_region_description() -> None:
    assert GridRegion(id="r", column_count=1, order=0).describe() == "Region 1 (1 column)"
    assert GridRegion(id="r", column_count=3, order=2).describe() == "Region 3 (3 columns)"
