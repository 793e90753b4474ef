"""TextUI - Textual-based terminal dashboard for CloudUnify."""

import logging
from typing import List

from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import DataTable, Footer, Header, Input, Label, ProgressBar, RichLog, Static

from cloudunify import CloudUnify, __version__
from storage import FileInfo
from utils.formatting import format_bytes, format_timestamp


class DebugLogHandler(logging.Handler):
    """Forwards log records into the dashboard's debug pane."""

    def __init__(self, app: "CloudUnifyApp") -> None:
        super().__init__()
        self.app = app
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        message = self.format(record)
        try:
            # Drivers log from worker threads
            self.app.call_from_thread(self.app.add_debug, message)
        except RuntimeError:
            # Already on the app thread
            self.app.add_debug(message)


class CloudUnifyApp(App):
    """Textual app showing providers, files and the combined quota."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 1;
        grid-rows: auto 1fr auto;
    }

    #providers {
        height: auto;
        max-height: 8;
        border-bottom: solid $primary;
    }

    #main-content {
        height: 1fr;
    }

    #left-panel {
        width: 2fr;
        border-right: solid $primary;
    }

    #right-panel {
        width: 1fr;
    }

    .panel-title {
        height: 1;
        background: $primary;
        color: $text;
        text-align: center;
        text-style: bold;
    }

    #files {
        height: 1fr;
    }

    #debug-log {
        height: 1fr;
    }

    #footer-bar {
        height: 3;
        padding: 0 1;
        background: $surface;
        border-top: solid $primary;
    }

    #quota-container {
        height: 1;
        margin-top: 1;
    }

    #quota-bar {
        width: 1fr;
    }

    #quota-label {
        width: auto;
        min-width: 30;
        text-align: right;
        margin-left: 1;
    }
    """

    BINDINGS = [
        Binding("r", "refresh", "Refresh"),
        Binding("q", "quit", "Quit"),
        Binding("ctrl+c", "quit", "Quit"),
    ]

    def __init__(self, cloud: CloudUnify) -> None:
        super().__init__()
        self.cloud = cloud
        self._log_handler = DebugLogHandler(self)

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield DataTable(id="providers", cursor_type="row")

        with Horizontal(id="main-content"):
            with Vertical(id="left-panel"):
                yield Static("FILES", classes="panel-title")
                yield Input(placeholder="Search files...", id="search")
                yield DataTable(id="files", cursor_type="row", zebra_stripes=True)

            with Vertical(id="right-panel"):
                yield Static("DEBUG LOG", classes="panel-title")
                yield RichLog(id="debug-log", highlight=True, markup=False)

        with Horizontal(id="footer-bar"):
            with Horizontal(id="quota-container"):
                yield ProgressBar(id="quota-bar", show_eta=False)
                yield Label("", id="quota-label")

        yield Footer()

    def on_mount(self) -> None:
        """Wire up logging and load providers in the background."""
        self.title = f"CloudUnify v{__version__}"

        providers = self.query_one("#providers", DataTable)
        providers.add_columns("Provider", "Status", "Used", "Total", "Free")
        files = self.query_one("#files", DataTable)
        files.add_columns("Name", "Provider", "Size", "Modified")

        logging.getLogger().addHandler(self._log_handler)
        self.run_worker(self.load(), exclusive=True, group="load")

    def on_unmount(self) -> None:
        logging.getLogger().removeHandler(self._log_handler)

    async def load(self) -> None:
        await self.cloud.start()
        self.show_providers()
        self.show_files(self.cloud.manager.files)

    async def reload(self) -> None:
        manager = self.cloud.manager
        await manager.refresh_all_quotas()
        await manager.get_all_files()
        self.show_providers()
        search = self.query_one("#search", Input).value
        if search.strip():
            await self.search(search)
        else:
            self.show_files(manager.files)

    async def search(self, query: str) -> None:
        self.show_files(await self.cloud.manager.search_files(query))

    def action_refresh(self) -> None:
        self.run_worker(self.reload(), exclusive=True, group="load")

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id == "search":
            self.run_worker(self.search(event.value), exclusive=True, group="search")

    def add_debug(self, message: str) -> None:
        """Add a message to the debug log."""
        self.query_one("#debug-log", RichLog).write(message)

    def show_providers(self) -> None:
        table = self.query_one("#providers", DataTable)
        table.clear()
        for provider_id, status in self.cloud.manager.get_providers_status().items():
            quota = status.quota
            state = Text("connected", style="green") if status.connected \
                else Text("disconnected", style="dim")
            table.add_row(status.name, state, format_bytes(quota.used),
                          format_bytes(quota.total), format_bytes(quota.free),
                          key=provider_id)

        total = self.cloud.manager.get_total_quota()
        bar = self.query_one("#quota-bar", ProgressBar)
        bar.update(total=100, progress=total.percentage)
        self.query_one("#quota-label", Label).update(
            f"{format_bytes(total.used)} / {format_bytes(total.total)} "
            f"({total.percentage:.1f}%)"
        )

    def show_files(self, files: List[FileInfo]) -> None:
        table = self.query_one("#files", DataTable)
        table.clear()
        for f in files:
            table.add_row(Text(f.name), f.provider_name, format_bytes(f.size),
                          format_timestamp(f.modified), key=f.key)
