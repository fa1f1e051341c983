"""Interactive TUI dashboard shown while ports are being forwarded."""

import logging
import webbrowser
from typing import TYPE_CHECKING, List, Optional, Tuple

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, RichLog, Static

from ssh_port_forward.specs import ForwardingSpec, build_fallback_command, sort_for_report

if TYPE_CHECKING:
    from ssh_port_forward.forwarder import PortForwarder


# Global buffer for logs before dashboard is mounted
_log_buffer: List[Tuple[str, int]] = []


def _human_bytes(n: int) -> str:
    """Format byte count as human-readable string."""
    if n < 1024:
        return f"{n} B"
    elif n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    elif n < 1024 * 1024 * 1024:
        return f"{n / (1024 * 1024):.1f} MB"
    else:
        return f"{n / (1024 * 1024 * 1024):.1f} GB"


def _human_speed(bps: float) -> str:
    """Format bytes/sec as human-readable speed string."""
    if bps < 1:
        return "idle"
    elif bps < 1024:
        return f"{bps:.0f} B/s"
    elif bps < 1024 * 1024:
        return f"{bps / 1024:.1f} KB/s"
    else:
        return f"{bps / (1024 * 1024):.1f} MB/s"


class LogHandler(logging.Handler):
    """Logging handler that sends records to the dashboard, buffering until it mounts."""

    def __init__(self, dashboard_app: Optional["DashboardApp"] = None):
        super().__init__()
        self.dashboard = dashboard_app

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if self.dashboard is None:
                _log_buffer.append((msg, record.levelno))
            else:
                self.dashboard.add_log(msg, record.levelno)
        except Exception:
            self.handleError(record)


class SpecDataTable(DataTable):
    """Forwarding specs in report order."""

    def __init__(self, forwarder: "PortForwarder", **kwargs):
        super().__init__(**kwargs)
        self.forwarder = forwarder
        self.cursor_type = "row"
        self.zebra_stripes = True
        self.shown_specs: List[ForwardingSpec] = []

    def on_mount(self) -> None:
        self.add_columns("Service", "Local", "Remote", "Status", "Traffic", "Speed")
        self.refresh_data()

    def _tunnel(self, spec: ForwardingSpec):
        session = self.forwarder.session
        if session is None or not spec.bound:
            return None
        return session.tunnel_for(spec)

    def refresh_data(self) -> None:
        """Rebuild the rows, keeping the cursor on the same row."""
        old_cursor_row = self.cursor_row
        self.clear()
        self.shown_specs = sort_for_report(self.forwarder.specs)

        for spec in self.shown_specs:
            bind_host, local_port = spec.bind_address()
            if spec.bound:
                status = "[green]● Forwarding[/green]"
                local_display = f"{bind_host}:{local_port}"
            elif spec.given_up:
                status = "[red]● Gave up[/red]"
                local_display = "-"
            else:
                status = "[dim]● Not bound[/dim]"
                local_display = "-"

            traffic_display = "-"
            speed_display = "-"
            tunnel = self._tunnel(spec)
            if tunnel is not None:
                stats = tunnel.get_stats()
                total_bytes = stats["bytes_sent"] + stats["bytes_received"]
                traffic_display = _human_bytes(total_bytes) if total_bytes > 0 else "-"
                speed_display = _human_speed(stats["send_speed"] + stats["recv_speed"])

            self.add_row(
                spec.service,
                local_display,
                f"{spec.remote_host}:{spec.port_to}",
                status,
                traffic_display,
                speed_display,
            )

        if self.shown_specs:
            self.move_cursor(row=min(old_cursor_row or 0, len(self.shown_specs) - 1), animate=False)

    def selected_spec(self) -> Optional[ForwardingSpec]:
        cursor_row = self.cursor_row
        if cursor_row is None or not 0 <= cursor_row < len(self.shown_specs):
            return None
        return self.shown_specs[cursor_row]


class LogPanel(Vertical):
    """A collapsible log panel."""

    def __init__(self, *children, **kwargs):
        super().__init__(*children, **kwargs)
        self._expanded = True

    def toggle(self) -> None:
        self._expanded = not self._expanded
        self.display = self._expanded


class DashboardApp(App):
    """Shows the forwarded ports until the user quits."""

    TITLE = "ssh-port-forward"
    CSS = """
    #logs_container {
        height: 30%;
        dock: bottom;
    }
    SpecDataTable {
        height: 1fr;
    }
    #main_content {
        height: 1fr;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("l", "toggle_logs", "Toggle logs"),
        Binding("o", "open_url", "Open URL"),
        Binding("y", "copy_command", "Copy ssh command"),
    ]

    def __init__(self, forwarder: "PortForwarder", **kwargs):
        super().__init__(**kwargs)
        self.forwarder = forwarder
        self._log_handler: Optional[LogHandler] = None
        self._adopted_handlers: List[LogHandler] = []
        self.status_message = ""

    def compose(self) -> ComposeResult:
        yield Header()
        yield Vertical(
            Static(f"[bold cyan]Forwarding from: {self.forwarder.target}[/bold cyan]", id="connection_info"),
            Static(
                "Press [bold]O[/bold] to open URL, [bold]Y[/bold] to copy the ssh command, "
                "[bold]L[/bold] for logs, [bold]Q[/bold] to stop forwarding",
                id="help",
            ),
            SpecDataTable(self.forwarder, id="specs_table"),
            Static("", id="status"),
            LogPanel(
                Static("[bold]Logs[/bold] (press L to close)", id="logs_title"),
                RichLog(id="logs", markup=True, auto_scroll=True, highlight=True),
                id="logs_container",
            ),
            id="main_content",
        )
        yield Footer()

    def on_mount(self) -> None:
        """Set up refresh timer and log handler when mounted."""
        self.set_interval(5, self.auto_refresh)

        # Replay any buffered logs
        for msg, level in _log_buffer:
            self.add_log(msg, level)
        _log_buffer.clear()

        # Buffering handlers installed before mount now write straight to the app
        logger = logging.getLogger("ssh-port-forward")
        self._adopted_handlers = [h for h in logger.handlers if isinstance(h, LogHandler) and h.dashboard is None]
        for handler in self._adopted_handlers:
            handler.dashboard = self

        if not self._adopted_handlers:
            self._log_handler = LogHandler(self)
            self._log_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
            logger.addHandler(self._log_handler)

    def on_unmount(self) -> None:
        for handler in self._adopted_handlers:
            handler.dashboard = None
        if self._log_handler is not None:
            logging.getLogger("ssh-port-forward").removeHandler(self._log_handler)

    def add_log(self, message: str, level: int) -> None:
        log_widget = self.query_one("#logs", RichLog)
        if level >= logging.ERROR:
            message = f"[red]{message}[/red]"
        elif level >= logging.WARNING:
            message = f"[yellow]{message}[/yellow]"
        log_widget.write(message)

    def _set_status(self, text: str) -> None:
        self.status_message = text
        self.query_one("#status", Static).update(text)

    def auto_refresh(self) -> None:
        """Refresh traffic figures and flag a dropped connection."""
        session = self.forwarder.session
        if session is not None and not session.is_connected():
            self._set_status("[red]✗ SSH connection lost, press Q to exit[/red]")
        self.query_one("#specs_table", SpecDataTable).refresh_data()

    def action_refresh(self) -> None:
        self.query_one("#specs_table", SpecDataTable).refresh_data()
        self._set_status("[green]⟳ Refreshed[/green]")

    def action_toggle_logs(self) -> None:
        self.query_one("#logs_container", LogPanel).toggle()

    def action_open_url(self) -> None:
        """Open the selected bound spec's local address in a browser."""
        spec = self.query_one("#specs_table", SpecDataTable).selected_spec()
        if spec is None or not spec.bound:
            return
        bind_host, local_port = spec.bind_address()
        url = f"http://{bind_host}:{local_port}"
        webbrowser.open(url)
        self._set_status(f"[green]Opened {url} in browser[/green]")

    def action_copy_command(self) -> None:
        """Copy the manual ssh command for the selected spec."""
        spec = self.query_one("#specs_table", SpecDataTable).selected_spec()
        if spec is None:
            return
        target = self.forwarder.target
        ssh_cmd = build_fallback_command([spec], target.user, target.hostname, target.port)
        self.copy_to_clipboard(ssh_cmd)
        self._set_status(f"[green]Copied: {ssh_cmd}[/green]")


def run_dashboard(forwarder: "PortForwarder") -> None:
    """Run the dashboard app until the user quits."""
    DashboardApp(forwarder).run()
