from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

GLOBAL_LABEL = "global"
CLIENT_LABEL_PREFIX = "client:"
ALLOWED_COLUMN_COUNTS = (1, 2, 3)
MIN_WIDGET_HEIGHT = 200
MAX_WIDGET_HEIGHT = 800


class ChartType(str, Enum):
    MIX_OF_PARTS = "mix-of-parts"
    TREND_OVER_TIME = "trend-over-time"
    COMPARISON_WITH_BUDGET = "comparison-with-budget"
    MULTI_SERIES = "multi-series"
    GENERIC_BAR = "generic-bar"
    GENERIC_LINE = "generic-line"
    GENERIC_PIE = "generic-pie"


class ValueKind(str, Enum):
    NUMBER = "number"
    TEXT = "text"
    DATE = "date"
    FRACTION = "fraction"


class DataSourceCategory(str, Enum):
    ENERGY_GENERATION = "energy-generation"
    DEMAND = "demand"
    COST = "cost"
    EFFICIENCY = "efficiency"
    CUSTOM = "custom"


class FieldRole(str, Enum):
    """Semantic tag assigned when a data source is authored."""

    CATEGORY = "category"
    TIME = "time"
    PRIMARY_METRIC = "primary_metric"
    BUDGET_METRIC = "budget_metric"
    SHARE = "share"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex[:12]
    return f"{prefix}-{token}" if prefix else token


@dataclass(slots=True, frozen=True)
class Scope:
    """Storage partition of a configuration: global default or one client."""

    client_id: str | None = None

    @classmethod
    def client(cls, client_id: str) -> Scope:
        client_id = str(client_id).strip()
        if not client_id:
            raise ValueError("client scope requires a non-empty client id")
        return cls(client_id=client_id)

    @classmethod
    def from_label(cls, label: str) -> Scope:
        text = str(label or "").strip()
        if text == GLOBAL_LABEL:
            return GLOBAL
        if text.startswith(CLIENT_LABEL_PREFIX):
            return cls.client(text[len(CLIENT_LABEL_PREFIX) :])
        raise ValueError(f"unrecognized scope label: {label!r}")

    @property
    def is_global(self) -> bool:
        return self.client_id is None

    @property
    def label(self) -> str:
        return GLOBAL_LABEL if self.client_id is None else f"{CLIENT_LABEL_PREFIX}{self.client_id}"

    @property
    def storage_key(self) -> str:
        return "config:global" if self.client_id is None else f"config:client:{self.client_id}"

    def describe(self) -> str:
        return "global" if self.client_id is None else f"client {self.client_id}"


GLOBAL = Scope()


@dataclass(slots=True)
class DataField:
    id: str
    name: str
    value_kind: str
    required: bool = True
    role: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "value_kind": _plain(self.value_kind),
            "required": self.required,
            "role": _plain(self.role),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DataField:
        _require_object(payload, "DataField")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name", payload["id"])),
            value_kind=str(payload["value_kind"]),
            required=bool(payload.get("required", True)),
            role=_str_or_none(payload.get("role")),
            description=str(payload.get("description") or ""),
        )


@dataclass(slots=True)
class DataSource:
    id: str
    name: str
    category: str = DataSourceCategory.CUSTOM.value
    fields: list[DataField] = field(default_factory=list)
    sample_rows: list[dict[str, Any]] = field(default_factory=list)

    def required_fields(self) -> list[DataField]:
        return [item for item in self.fields if item.required]

    def field_for_role(self, role: FieldRole | str) -> DataField | None:
        wanted = _plain(role)
        return next((item for item in self.fields if _plain(item.role) == wanted), None)

    def roles(self) -> dict[str, str]:
        return {_plain(item.role): item.id for item in self.fields if item.role}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": _plain(self.category),
            "fields": [item.to_dict() for item in self.fields],
            "sample_rows": copy.deepcopy(self.sample_rows),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DataSource:
        _require_object(payload, "DataSource")
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            category=str(payload.get("category") or DataSourceCategory.CUSTOM.value),
            fields=[DataField.from_dict(item) for item in payload.get("fields", [])],
            sample_rows=[dict(row) for row in payload.get("sample_rows", [])],
        )


@dataclass(slots=True)
class WidgetPresentation:
    title: str
    height: int = 300
    colors: list[str] = field(default_factory=list)
    subtitle: str = ""
    show_legend: bool = True
    show_tooltip: bool = True
    custom_options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "subtitle": self.subtitle,
            "height": self.height,
            "colors": list(self.colors),
            "show_legend": self.show_legend,
            "show_tooltip": self.show_tooltip,
            "custom_options": copy.deepcopy(self.custom_options),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WidgetPresentation:
        _require_object(payload, "WidgetPresentation")
        return cls(
            title=str(payload.get("title") or ""),
            subtitle=str(payload.get("subtitle") or ""),
            height=int(payload.get("height", 300)),
            colors=[str(color) for color in payload.get("colors", [])],
            show_legend=bool(payload.get("show_legend", True)),
            show_tooltip=bool(payload.get("show_tooltip", True)),
            custom_options=dict(payload.get("custom_options") or {}),
        )


@dataclass(slots=True)
class ChartWidget:
    id: str
    chart_type: str
    column_index: int
    presentation: WidgetPresentation
    data_source: DataSource

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chart_type": _plain(self.chart_type),
            "column_index": self.column_index,
            "presentation": self.presentation.to_dict(),
            "data_source": self.data_source.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ChartWidget:
        _require_object(payload, "ChartWidget")
        return cls(
            id=str(payload["id"]),
            chart_type=str(payload["chart_type"]),
            column_index=int(payload["column_index"]),
            presentation=WidgetPresentation.from_dict(payload.get("presentation") or {}),
            data_source=DataSource.from_dict(payload.get("data_source") or {}),
        )


@dataclass(slots=True)
class GridRegion:
    id: str
    column_count: int
    order: int
    widgets: list[ChartWidget] = field(default_factory=list)

    def widget_at(self, column_index: int) -> ChartWidget | None:
        return next((item for item in self.widgets if item.column_index == column_index), None)

    def find(self, widget_id: str) -> ChartWidget | None:
        return next((item for item in self.widgets if item.id == widget_id), None)

    def describe(self) -> str:
        plural = "s" if self.column_count != 1 else ""
        return f"Region {self.order + 1} ({self.column_count} column{plural})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "column_count": self.column_count,
            "order": self.order,
            "widgets": [item.to_dict() for item in self.widgets],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GridRegion:
        _require_object(payload, "GridRegion")
        return cls(
            id=str(payload["id"]),
            column_count=int(payload["column_count"]),
            order=int(payload.get("order", 0)),
            widgets=[ChartWidget.from_dict(item) for item in payload.get("widgets", [])],
        )


@dataclass(slots=True)
class ReportConfiguration:
    id: str
    name: str
    owner_scope: Scope = GLOBAL
    regions: list[GridRegion] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    is_active: bool = True

    def ordered_regions(self) -> list[GridRegion]:
        return sorted(self.regions, key=lambda region: region.order)

    def region(self, region_id: str) -> GridRegion | None:
        return next((item for item in self.regions if item.id == region_id), None)

    def all_widgets(self) -> list[ChartWidget]:
        return [widget for region in self.regions for widget in region.widgets]

    def widget_count(self) -> int:
        return sum(len(region.widgets) for region in self.regions)

    def clone(self, **changes: Any) -> ReportConfiguration:
        cloned = copy.deepcopy(self)
        return replace(cloned, **changes) if changes else cloned

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "client_id": self.owner_scope.client_id,
            "regions": [region.to_dict() for region in self.regions],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ReportConfiguration:
        _require_object(payload, "configuration")
        client_id = _str_or_none(payload.get("client_id"))
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            owner_scope=GLOBAL if client_id is None else Scope.client(client_id),
            regions=[GridRegion.from_dict(item) for item in payload.get("regions", [])],
            created_at=_coerce_datetime(payload.get("created_at")),
            updated_at=_coerce_datetime(payload.get("updated_at")),
            is_active=bool(payload.get("is_active", True)),
        )


def empty_configuration(scope: Scope = GLOBAL, name: str | None = None) -> ReportConfiguration:
    default_name = "Global report" if scope.is_global else f"Custom report - Client {scope.client_id}"
    now = utcnow()
    return ReportConfiguration(
        id=new_id("report"),
        name=name or default_name,
        owner_scope=scope,
        regions=[],
        created_at=now,
        updated_at=now,
        is_active=True,
    )


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(_plain(value)).strip()
    return text or None


def _coerce_datetime(value: Any) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError(f"cannot interpret {type(value).__name__} as a timestamp")


def _require_object(payload: Any, kind: str) -> None:
    if not isinstance(payload, dict):
        raise TypeError(f"{kind} payload must be an object, got {type(payload).__name__}")
