"""Textual operator console: kill switches, previews, stats and the delivery queue."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from rich.text import Text
from textual import on
from textual.app import App, ComposeResult
from textual.containers import Center, Container, Horizontal, Vertical
from textual.widgets import Button, ContentSwitcher, DataTable, Footer, Input, Static, Switch, Tab, Tabs

from needmatch.core.controls import OperatorControls
from needmatch.core.errors import MatchingError
from needmatch.core.kill_switch import COMPONENTS

ACCENT = "#2AABEE"


class SwitchesTab(Container):
    def compose(self) -> ComposeResult:
        with Vertical(id="switches-panel"):
            yield Static("Kill switches (on = component disabled)", classes="section-title")
            for component in COMPONENTS:
                with Horizontal(classes="switch-row"):
                    yield Static(component, classes="switch-label")
                    yield Switch(id=f"switch-{component}")


class PreviewTab(Container):
    def compose(self) -> ComposeResult:
        with Vertical(id="preview-panel"):
            with Horizontal(id="preview-actions"):
                yield Input(placeholder="item id", id="preview-item")
                yield Button("Preview", id="preview-btn", variant="primary")
            yield DataTable(id="preview-table", cursor_type="row")
            yield Static("", id="preview-output")

    def on_mount(self) -> None:
        table = self.query_one("#preview-table", DataTable)
        table.add_column("#", key="rank", width=4)
        table.add_column("recipient", key="recipient", width=20)
        table.add_column("why", key="why", width=44)
        table.add_column("reasons", key="reasons", width=36)
        table.zebra_stripes = True


class StatsTab(Container):
    def compose(self) -> ComposeResult:
        with Vertical(id="stats-panel"):
            with Horizontal(id="stats-actions"):
                yield Input(value="24", placeholder="hours", id="stats-hours")
                yield Button("Refresh", id="stats-btn")
            yield Static("", id="stats-output")


class QueueTab(Container):
    def compose(self) -> ComposeResult:
        with Vertical(id="queue-panel"):
            yield DataTable(id="queue-table", cursor_type="row")
            with Horizontal(id="queue-actions"):
                yield Button("Retry undelivered", id="retry-btn", variant="success")
                yield Button("Resolve selected", id="resolve-btn")
            yield Static("", id="queue-output")

    def on_mount(self) -> None:
        table = self.query_one("#queue-table", DataTable)
        table.add_column("id", key="id", width=6)
        table.add_column("item", key="item", width=18)
        table.add_column("recipient", key="recipient", width=18)
        table.add_column("attempts", key="attempts", width=9)
        table.add_column("last error", key="error", width=40)
        table.zebra_stripes = True


class OperatorConsoleApp(App):
    """Operator console sharing one OperatorControls instance with the CLI."""

    CSS = """
    #header { height: 4; padding: 0 1; }
    #tabs-bar { height: 3; }
    .section-title { padding: 1 0; text-style: bold; }
    .switch-row { height: 3; }
    .switch-label { width: 16; padding: 1 0; }
    #preview-actions, #stats-actions, #queue-actions { height: 3; }
    #preview-item, #stats-hours { width: 30; }
    DataTable { height: 1fr; }
    """

    BINDINGS = [
        ("ctrl+r", "refresh", "Refresh"),
        ("q", "quit", "Quit"),
    ]

    def __init__(self, controls: OperatorControls, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._controls = controls
        self._syncing = False

    def compose(self) -> ComposeResult:
        with Container(id="header"):
            yield Static(self._title_text(), id="title")
            yield Static("", id="header-status")
        with Container(id="tabs-bar"):
            with Center():
                yield Tabs(
                    Tab("Switches", id="switches"),
                    Tab("Preview", id="preview"),
                    Tab("Stats", id="stats"),
                    Tab("Queue", id="queue"),
                    id="tabs",
                )
        with ContentSwitcher(id="content", initial="switches"):
            yield SwitchesTab(id="switches")
            yield PreviewTab(id="preview")
            yield StatsTab(id="stats")
            yield QueueTab(id="queue")
        yield Footer()

    def on_mount(self) -> None:
        self.action_refresh()

    def on_tabs_tab_activated(self, event: Tabs.TabActivated) -> None:
        if event.tab.id:
            self.query_one("#content", ContentSwitcher).current = event.tab.id

    def action_refresh(self) -> None:
        self._sync_switches()
        self._load_stats()
        self._load_queue()

    def _sync_switches(self) -> None:
        state = self._controls.kill_switch_state()
        self._syncing = True
        try:
            for component, engaged in state.items():
                self.query_one(f"#switch-{component}", Switch).value = engaged
        finally:
            self._syncing = False
        disabled = [name for name, engaged in state.items() if engaged]
        status = f"disabled: {', '.join(disabled)}" if disabled else "all components running"
        self.query_one("#header-status", Static).update(status)

    def on_switch_changed(self, event: Switch.Changed) -> None:
        if self._syncing or not event.switch.id:
            return
        component = event.switch.id.removeprefix("switch-")
        self._controls.set_kill_switch(component, event.value)
        self._sync_switches()

    @on(Button.Pressed, "#preview-btn")
    async def _on_preview(self) -> None:
        item_id = self.query_one("#preview-item", Input).value.strip()
        output = self.query_one("#preview-output", Static)
        table = self.query_one("#preview-table", DataTable)
        table.clear()
        if not item_id:
            output.update("Enter an item id.")
            return
        try:
            outcome = await self._controls.preview(item_id)
        except MatchingError as exc:
            output.update(f"error: {exc}")
            return
        for entry in outcome.preview:
            table.add_row(str(entry.rank), entry.recipient_id, entry.justification, "; ".join(entry.reasons))
        if outcome.zero_match:
            output.update(outcome.zero_match.render())
        else:
            output.update(f"{outcome.status.value}: {len(outcome.preview)} recipients {outcome.detail}".strip())

    @on(Button.Pressed, "#stats-btn")
    def _load_stats(self) -> None:
        raw = self.query_one("#stats-hours", Input).value.strip() or "24"
        try:
            hours = float(raw)
        except ValueError:
            self.query_one("#stats-output", Static).update(f"invalid hours: {raw}")
            return
        stats = self._controls.get_pipeline_stats(timedelta(hours=hours))
        lines = [
            f"Runs: {stats.runs}",
            *(f"  {status}: {count}" for status, count in sorted(stats.runs_by_status.items())),
            f"Notifications created: {stats.notifications_created}",
            f"Delivered: {stats.notifications_delivered}",
            f"Clicked: {stats.notifications_clicked}",
            f"Marked not relevant: {stats.marked_not_relevant}",
            f"Open delivery failures: {stats.open_delivery_failures}",
            "Decisions:",
            *(f"  {decision}: {count}" for decision, count in sorted(stats.decisions.items())),
        ]
        self.query_one("#stats-output", Static).update("\n".join(lines))

    def _load_queue(self) -> None:
        table = self.query_one("#queue-table", DataTable)
        table.clear()
        failures = self._controls.list_operator_queue()
        for failure in failures:
            table.add_row(
                str(failure.id),
                failure.item_id,
                failure.recipient_id,
                str(failure.attempts),
                failure.last_error[:60],
                key=str(failure.id),
            )
        self.query_one("#queue-output", Static).update(f"{len(failures)} open failures")

    @on(Button.Pressed, "#retry-btn")
    async def _on_retry(self) -> None:
        output = self.query_one("#queue-output", Static)
        try:
            report = await self._controls.retry_failed()
        except MatchingError as exc:
            output.update(f"error: {exc}")
            return
        self._load_queue()
        output.update(f"delivered {len(report.delivered)}, failed {len(report.failed)}")

    @on(Button.Pressed, "#resolve-btn")
    def _on_resolve(self) -> None:
        table = self.query_one("#queue-table", DataTable)
        if table.row_count == 0:
            return
        row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        if row_key.value is not None:
            self._controls.resolve_failure(int(row_key.value))
        self._load_queue()

    @staticmethod
    def _title_text() -> Text:
        return Text.assemble(("NEED", ACCENT), ("MATCH > Operator Console", "bold"))
