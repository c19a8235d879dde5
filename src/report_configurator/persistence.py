from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable

from .codec import DecodeError, deserialize_configuration, dumps, loads, serialize_configuration
from .models import DataSource, GLOBAL, ReportConfiguration, Scope, new_id, utcnow
from .stores import KeyValueStore
from .validation import ValidationIssue, validate

logger = logging.getLogger(__name__)

INDEX_KEY = "config:index"
DRAFT_KEY_PREFIX = "draft:"
EXPORT_SCHEMA_VERSION = 1


class StorageFailure(str, Enum):
    NOT_FOUND = "not-found"
    CORRUPT = "corrupt"
    WRITE_FAILED = "write-failed"


@dataclass(slots=True)
class SaveResult:
    success: bool
    message: str
    config_id: str | None = None
    configuration: ReportConfiguration | None = None
    failure: StorageFailure | None = None
    errors: list[ValidationIssue] = field(default_factory=list)
    created: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "config_id": self.config_id,
            "failure": self.failure.value if self.failure else None,
            "errors": [issue.to_dict() for issue in self.errors],
        }


@dataclass(slots=True)
class LoadResult:
    success: bool
    configuration: ReportConfiguration | None = None
    message: str = ""
    failure: StorageFailure | None = None


@dataclass(slots=True)
class ResolvedReport:
    """Outcome of walking client, then global, then the built-in default."""

    configuration: ReportConfiguration | None
    source: str
    scope: Scope | None = None
    failures: list[str] = field(default_factory=list)

    @property
    def use_default(self) -> bool:
        return self.configuration is None


@dataclass(slots=True)
class IndexEntry:
    label: str
    config_id: str
    name: str
    updated_at: datetime
    is_active: bool = True
    widget_count: int = 0

    @property
    def scope(self) -> Scope:
        return Scope.from_label(self.label)

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "config_id": self.config_id,
            "name": self.name,
            "updated_at": self.updated_at,
            "is_active": self.is_active,
            "widget_count": self.widget_count,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IndexEntry:
        updated_at = payload.get("updated_at")
        if not isinstance(updated_at, datetime):
            raise TypeError("index entry is missing its timestamp")
        return cls(
            label=str(payload["label"]),
            config_id=str(payload["config_id"]),
            name=str(payload.get("name") or ""),
            updated_at=updated_at,
            is_active=bool(payload.get("is_active", True)),
            widget_count=int(payload.get("widget_count", 0)),
        )


@dataclass(slots=True)
class ImportResult:
    success: bool
    message: str
    imported: int = 0
    errors: list[str] = field(default_factory=list)


def draft_key(config_id: str) -> str:
    return f"{DRAFT_KEY_PREFIX}{config_id}"


class PersistenceGateway:
    """Validate-then-write access to the stored configurations of every scope."""

    def __init__(
        self,
        store: KeyValueStore,
        data_sources: Iterable[DataSource] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.data_sources = list(data_sources) if data_sources is not None else None
        self.clock = clock

    def save(self, configuration: ReportConfiguration) -> SaveResult:
        report = validate(configuration, self.data_sources)
        if not report.valid:
            message = "Invalid configuration: " + "; ".join(report.messages())
            logger.info(
                "report_save_rejected",
                extra={"config_id": configuration.id, "error_count": len(report.errors)},
            )
            return SaveResult(False, message, configuration.id, errors=list(report.errors))

        scope = configuration.owner_scope
        stored = configuration.clone()
        now = self.clock()
        stored.updated_at = now if now >= configuration.updated_at else configuration.updated_at
        created = self.store.get(scope.storage_key) is None

        if not self.store.set(scope.storage_key, serialize_configuration(stored)):
            logger.warning("report_write_failed", extra={"scope": scope.label, "config_id": stored.id})
            return SaveResult(
                False,
                f"Could not store the configuration for {scope.describe()}: storage is full or unavailable",
                stored.id,
                failure=StorageFailure.WRITE_FAILED,
            )

        self._upsert_index(stored)
        self.clear_draft(stored.id)
        logger.info("report_saved", extra={"scope": scope.label, "config_id": stored.id, "is_new": created})
        return SaveResult(
            True,
            f"Configuration saved for {scope.describe()}",
            stored.id,
            configuration=stored,
            created=created,
        )

    def load(self, scope: Scope) -> LoadResult:
        text = self.store.get(scope.storage_key)
        if text is None:
            return LoadResult(False, message=f"No configuration stored for {scope.describe()}", failure=StorageFailure.NOT_FOUND)
        try:
            configuration = deserialize_configuration(text)
        except DecodeError as exc:
            logger.warning("report_corrupt", extra={"scope": scope.label, "error": str(exc)})
            return LoadResult(
                False,
                message=f"Stored configuration for {scope.describe()} is unreadable",
                failure=StorageFailure.CORRUPT,
            )
        return LoadResult(True, configuration=configuration, message=f"Configuration loaded for {scope.describe()}")

    def resolve(self, scope: Scope) -> ResolvedReport:
        chain = [scope] if scope.is_global else [scope, GLOBAL]
        failures: list[str] = []
        for candidate in chain:
            result = self.load(candidate)
            if not result.success or result.configuration is None:
                failures.append(f"{candidate.label}: {result.failure.value if result.failure else 'unavailable'}")
                continue
            if not result.configuration.is_active:
                failures.append(f"{candidate.label}: inactive")
                continue
            source = "global" if candidate.is_global else "client"
            return ResolvedReport(result.configuration, source, candidate, failures)
        logger.info("report_resolved_to_default", extra={"scope": scope.label, "failures": failures})
        return ResolvedReport(None, "default", None, failures)

    def duplicate(self, source_scope: Scope, target_client_id: str) -> SaveResult:
        loaded = self.load(source_scope)
        if not loaded.success or loaded.configuration is None:
            return SaveResult(False, loaded.message, failure=loaded.failure)

        now = self.clock()
        target = Scope.client(target_client_id)
        duplicated = loaded.configuration.clone(
            id=new_id("report"),
            name=f"{loaded.configuration.name} - Client {target.client_id}",
            owner_scope=target,
            created_at=now,
            updated_at=now,
        )
        return self.save(duplicated)

    def delete(self, scope: Scope) -> SaveResult:
        if self.store.get(scope.storage_key) is None:
            return SaveResult(
                False,
                f"No configuration stored for {scope.describe()}",
                failure=StorageFailure.NOT_FOUND,
            )
        if not self.store.remove(scope.storage_key):
            return SaveResult(
                False,
                f"Could not delete the configuration for {scope.describe()}",
                failure=StorageFailure.WRITE_FAILED,
            )
        entries = [entry for entry in self.list_configurations() if entry.label != scope.label]
        self._write_index(entries)
        logger.info("report_deleted", extra={"scope": scope.label})
        return SaveResult(True, f"Configuration deleted for {scope.describe()}")

    def list_configurations(self) -> list[IndexEntry]:
        text = self.store.get(INDEX_KEY)
        if text is None:
            return []
        try:
            payload = loads(text)
            entries = [IndexEntry.from_dict(item) for item in payload]
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("report_index_unreadable", extra={"error": str(exc)})
            return []
        return sorted(entries, key=lambda entry: entry.updated_at, reverse=True)

    def export_all(self) -> str:
        configurations: dict[str, Any] = {}
        for entry in self.list_configurations():
            loaded = self.load(entry.scope)
            if loaded.success and loaded.configuration is not None:
                configurations[entry.label] = loaded.configuration.to_dict()
        document = {
            "schema_version": EXPORT_SCHEMA_VERSION,
            "exported_at": self.clock(),
            "configurations": configurations,
        }
        return dumps(document, indent=2)

    def import_all(self, document: str | dict[str, Any]) -> ImportResult:
        """Save every configuration of an export document, keeping the ones that succeed.

        Entries are independent: one failing entry is reported and the rest
        are still imported. There is no rollback.
        """
        try:
            parsed = loads(document) if isinstance(document, str) else document
        except ValueError as exc:
            return ImportResult(False, f"Invalid import document: {exc}")
        if not isinstance(parsed, dict) or not isinstance(parsed.get("configurations"), dict):
            return ImportResult(False, "Invalid import document: missing configurations")
        version = parsed.get("schema_version", EXPORT_SCHEMA_VERSION)
        if version != EXPORT_SCHEMA_VERSION:
            return ImportResult(False, f"Unsupported schema version: {version}")

        imported = 0
        errors: list[str] = []
        for label, payload in parsed["configurations"].items():
            try:
                scope = Scope.from_label(label)
                configuration = ReportConfiguration.from_dict(payload)
            except (ValueError, KeyError, TypeError) as exc:
                errors.append(f"{label}: {exc}")
                continue
            if configuration.owner_scope != scope:
                configuration.owner_scope = scope
            result = self.save(configuration)
            if result.success:
                imported += 1
            else:
                errors.append(f"{label}: {result.message}")

        logger.info("reports_imported", extra={"imported": imported, "failed": len(errors)})
        if errors:
            return ImportResult(
                False,
                f"Imported {imported} configuration(s). Errors: {', '.join(errors)}",
                imported,
                errors,
            )
        return ImportResult(True, f"Imported {imported} configuration(s)", imported)

    def save_draft(self, configuration: ReportConfiguration) -> bool:
        saved = self.store.set(draft_key(configuration.id), serialize_configuration(configuration))
        if not saved:
            logger.warning("draft_write_failed", extra={"config_id": configuration.id})
        return saved

    def load_draft(self, config_id: str) -> ReportConfiguration | None:
        text = self.store.get(draft_key(config_id))
        if text is None:
            return None
        try:
            return deserialize_configuration(text)
        except DecodeError as exc:
            logger.warning("draft_corrupt", extra={"config_id": config_id, "error": str(exc)})
            return None

    def clear_draft(self, config_id: str) -> None:
        self.store.remove(draft_key(config_id))

    def _upsert_index(self, configuration: ReportConfiguration) -> None:
        label = configuration.owner_scope.label
        entries = [entry for entry in self.list_configurations() if entry.label != label]
        entries.append(
            IndexEntry(
                label=label,
                config_id=configuration.id,
                name=configuration.name,
                updated_at=configuration.updated_at,
                is_active=configuration.is_active,
                widget_count=configuration.widget_count(),
            )
        )
        self._write_index(entries)

    def _write_index(self, entries: list[IndexEntry]) -> None:
        ordered = sorted(entries, key=lambda entry: entry.updated_at, reverse=True)
        if not self.store.set(INDEX_KEY, dumps([entry.to_dict() for entry in ordered])):
            logger.warning("report_index_write_failed", extra={"entries": len(ordered)})

