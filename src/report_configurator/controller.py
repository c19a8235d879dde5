from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Sequence

from . import placement
from .catalog import BuiltinDefaultReportProvider, DefaultReportProvider, create_widget_from_palette, find_data_source
from .models import DataSource, ReportConfiguration, Scope, WidgetPresentation, empty_configuration, new_id, utcnow
from .persistence import PersistenceGateway
from .placement import PlacementError
from .sync import NotificationKind, SyncBroadcaster, SyncNotification, notification_for
from .validation import ValidationIssue, ValidationReport, summarize, validate

logger = logging.getLogger(__name__)

PlacementOperation = Callable[[ReportConfiguration], ReportConfiguration]


class ControllerState(str, Enum):
    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    SAVING = "saving"


class BusyError(RuntimeError):
    """A load or save was requested while another one is still running."""


@dataclass(slots=True)
class CommandResult:
    success: bool
    message: str = ""
    error: Exception | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": type(self.error).__name__ if self.error else None,
        }


class ConfigurationController:
    """Editing session over one report configuration.

    The controller owns the edited buffer. Every edit goes through a pure
    placement function and is followed by re-validation; invalid buffers are
    allowed and only ``save`` refuses them. Changes saved by other sessions on
    the same scope reload a clean buffer and mark a dirty one as stale.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        broadcaster: SyncBroadcaster,
        data_sources: list[DataSource] | None = None,
        default_provider: DefaultReportProvider | None = None,
        autosave_drafts: bool = True,
        session_id: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.default_provider = default_provider or BuiltinDefaultReportProvider()
        if data_sources is None:
            data_sources = getattr(self.default_provider, "data_sources", None) or []
        self.data_sources = list(data_sources)
        self.autosave_drafts = autosave_drafts
        self.session_id = session_id or new_id("session")

        self.state = ControllerState.EMPTY
        self.configuration: ReportConfiguration | None = None
        self.scope: Scope | None = None
        self.resolved_scope: Scope | None = None
        self.source = ""
        self.errors: list[ValidationIssue] = []
        self.last_error: str | None = None
        self.dirty = False
        self.stale = False
        self.persisted = False

        self.broadcaster.add_listener(self.session_id, self._on_sync)

    @property
    def valid(self) -> bool:
        return self.configuration is not None and not self.errors

    def create_empty(self, scope: Scope, name: str | None = None) -> CommandResult:
        if self._busy():
            return self._busy_result("create")
        self.configuration = empty_configuration(scope, name)
        self.scope = scope
        self.resolved_scope = None
        self.source = "new"
        self.persisted = False
        self.dirty = True
        self.stale = False
        self.last_error = None
        self.state = ControllerState.READY
        self._revalidate()
        return CommandResult(True, f"New configuration for {scope.describe()}")

    def load_for_scope(self, scope: Scope) -> CommandResult:
        if self._busy():
            return self._busy_result("load")
        previous = self.state
        self.state = ControllerState.LOADING
        try:
            resolved = self.gateway.resolve(scope)
            if resolved.configuration is None:
                configuration = self.default_provider.default_report(scope).clone(owner_scope=scope)
            elif resolved.scope != scope:
                now = utcnow()
                configuration = resolved.configuration.clone(
                    id=f"{resolved.configuration.id}-{scope.client_id}",
                    owner_scope=scope,
                    created_at=now,
                    updated_at=now,
                )
            else:
                configuration = resolved.configuration
        except Exception:
            self.state = previous
            raise

        self.configuration = configuration
        self.scope = scope
        self.resolved_scope = resolved.scope
        self.source = resolved.source
        self.persisted = resolved.scope == scope
        self.dirty = False
        self.stale = False
        self.last_error = None
        self.state = ControllerState.READY
        self._revalidate()
        logger.info(
            "report_loaded",
            extra={"session_id": self.session_id, "scope": scope.label, "source": resolved.source},
        )
        return CommandResult(True, f"Loaded {resolved.source} configuration for {scope.describe()}")

    def apply_placement(self, operation: PlacementOperation) -> CommandResult:
        """Run a placement function on the buffer.

        ``PlacementError`` from the operation propagates and leaves the buffer
        untouched. A resulting invalid configuration is kept; the findings are
        exposed on ``errors``.
        """
        if self._busy():
            return self._busy_result("edit")
        if self.configuration is None:
            return CommandResult(False, "No configuration is loaded")
        self.configuration = operation(self.configuration)
        self.dirty = True
        report = self._revalidate()
        if self.autosave_drafts:
            self.gateway.save_draft(self.configuration)
        return CommandResult(True, summarize(report))

    def save(self) -> CommandResult:
        if self._busy():
            return self._busy_result("save")
        if self.configuration is None:
            return CommandResult(False, "No configuration is loaded")

        self.state = ControllerState.SAVING
        try:
            result = self.gateway.save(self.configuration)
            if not result.success or result.configuration is None:
                self.last_error = result.message
                if result.errors:
                    self.errors = list(result.errors)
                return CommandResult(False, result.message)

            saved = result.configuration
            kind = NotificationKind.CREATED if result.created else NotificationKind.UPDATED
            self.configuration = saved.clone()
            self.persisted = True
            self.resolved_scope = saved.owner_scope
            self.source = "global" if saved.owner_scope.is_global else "client"
            self.dirty = False
            self.stale = False
            self.last_error = None
            self.broadcaster.announce(notification_for(saved, kind))
            self.broadcaster.invalidate(saved.owner_scope)
            return CommandResult(True, result.message)
        finally:
            self.state = ControllerState.READY

    def drop_from_palette(
        self,
        chart_type: str,
        data_source_id: str,
        region_id: str,
        column_index: int,
        widget_id: str | None = None,
    ) -> CommandResult:
        if self.configuration is None:
            return CommandResult(False, "No configuration is loaded")
        data_source = find_data_source(data_source_id, self.data_sources)
        if data_source is None:
            raise PlacementError(f"Data source not found: {data_source_id}")
        region = self.configuration.region(region_id)
        if region is None:
            raise PlacementError(f"Target region not found: {region_id}")
        if widget_id and placement.find_widget(widget_id, self.configuration) is not None:
            raise PlacementError(f"Widget id already in use: {widget_id}")

        widget = create_widget_from_palette(chart_type, data_source, column_index, widget_id)
        check = placement.can_place(widget, region, column_index, self.configuration)
        if not check.allowed:
            raise PlacementError(check.reason or "The widget cannot be placed there")
        return self.apply_placement(partial(placement.place, widget, None, region_id, column_index))

    def move_widget(self, widget_id: str, target_region_id: str, column_index: int) -> CommandResult:
        if self.configuration is None:
            return CommandResult(False, "No configuration is loaded")
        position = placement.find_widget(widget_id, self.configuration)
        if position is None:
            raise PlacementError(f"Widget not found: {widget_id}")
        return self.apply_placement(
            partial(placement.move_between_regions, widget_id, position.region_id, target_region_id, column_index)
        )

    def swap_widgets(self, widget_id_a: str, widget_id_b: str) -> CommandResult:
        return self.apply_placement(partial(placement.swap, widget_id_a, widget_id_b))

    def remove_widget(self, widget_id: str) -> CommandResult:
        return self.apply_placement(partial(placement.remove, widget_id))

    def reorder_widgets(self, region_id: str, ordered_widget_ids: Sequence[str]) -> CommandResult:
        return self.apply_placement(partial(placement.reorder_widgets_within_region, region_id, list(ordered_widget_ids)))

    def add_region(self, column_count: int, region_id: str | None = None) -> CommandResult:
        return self.apply_placement(lambda configuration: placement.add_region(column_count, configuration, region_id))

    def remove_region(self, region_id: str) -> CommandResult:
        return self.apply_placement(partial(placement.remove_region, region_id))

    def reorder_regions(self, ordered_region_ids: Sequence[str]) -> CommandResult:
        return self.apply_placement(partial(placement.reorder_regions, list(ordered_region_ids)))

    def update_widget(
        self,
        widget_id: str,
        presentation: WidgetPresentation | None = None,
        data_source_id: str | None = None,
        chart_type: str | None = None,
    ) -> CommandResult:
        data_source = None
        if data_source_id is not None:
            data_source = find_data_source(data_source_id, self.data_sources)
            if data_source is None:
                raise PlacementError(f"Data source not found: {data_source_id}")
        return self.apply_placement(
            lambda configuration: placement.update_widget(
                widget_id,
                configuration,
                presentation=presentation,
                data_source=data_source,
                chart_type=chart_type,
            )
        )

    def rename(self, name: str) -> CommandResult:
        return self.apply_placement(lambda configuration: configuration.clone(name=name, updated_at=utcnow()))

    def set_active(self, is_active: bool) -> CommandResult:
        return self.apply_placement(lambda configuration: configuration.clone(is_active=is_active, updated_at=utcnow()))

    def save_draft(self) -> CommandResult:
        if self.configuration is None:
            return CommandResult(False, "No configuration is loaded")
        if not self.gateway.save_draft(self.configuration):
            return CommandResult(False, "Could not store the draft")
        return CommandResult(True, "Draft saved")

    def has_draft(self) -> bool:
        return self.configuration is not None and self.gateway.load_draft(self.configuration.id) is not None

    def restore_draft(self) -> CommandResult:
        if self._busy():
            return self._busy_result("restore")
        if self.configuration is None:
            return CommandResult(False, "No configuration is loaded")
        draft = self.gateway.load_draft(self.configuration.id)
        if draft is None:
            return CommandResult(False, "No draft stored for this configuration")
        self.configuration = draft
        self.dirty = True
        self._revalidate()
        return CommandResult(True, "Draft restored")

    def close(self) -> None:
        self.broadcaster.remove_listener(self.session_id)

    def snapshot(self) -> dict[str, Any]:
        report_errors = [issue.to_dict() for issue in self.errors]
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "scope": self.scope.label if self.scope else None,
            "resolved_scope": self.resolved_scope.label if self.resolved_scope else None,
            "source": self.source,
            "dirty": self.dirty,
            "stale": self.stale,
            "valid": self.valid,
            "last_error": self.last_error,
            "errors": report_errors,
            "configuration": self.configuration.to_dict() if self.configuration else None,
        }

    def _busy(self) -> bool:
        return self.state in (ControllerState.LOADING, ControllerState.SAVING)

    def _busy_result(self, action: str) -> CommandResult:
        error = BusyError(f"Cannot {action} while the controller is {self.state.value}")
        logger.info("controller_busy", extra={"session_id": self.session_id, "action": action})
        return CommandResult(False, str(error), error)

    def _revalidate(self) -> ValidationReport:
        report = validate(self.configuration, self.data_sources or None)
        self.errors = list(report.errors)
        return report

    def _on_sync(self, notification: SyncNotification) -> None:
        if self.scope is None or self._busy():
            return
        falls_back = not self.persisted and notification.scope.is_global
        if notification.scope != self.scope and not falls_back:
            return
        if self.dirty:
            self.stale = True
            logger.info(
                "report_marked_stale",
                extra={"session_id": self.session_id, "scope": self.scope.label, "kind": notification.kind},
            )
            return
        self.load_for_scope(self.scope)
