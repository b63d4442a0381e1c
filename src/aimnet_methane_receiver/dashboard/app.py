"""
Dash application for the AIMNet gas monitor.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import dash  # type: ignore
from dash import dcc, html, Input, Output, State

from ..data_recorder import SessionStore
from ..models import DeviceKind, DiscoveredDevice
from ..runtime import MonitorRuntime
from ..session import ConnectionState, SessionSnapshot
from .plots import create_empty_figure, create_plot_layout, create_timed_sample_plot

logger = logging.getLogger(__name__)

STATUS_STYLES: Dict[ConnectionState, Tuple[str, str]] = {
    ConnectionState.IDLE: ("⚪ Idle", "gray"),
    ConnectionState.SCANNING: ("🔍 Scanning", "steelblue"),
    ConnectionState.CONNECTING: ("🟡 Connecting", "orange"),
    ConnectionState.PREPARING: ("🟡 Warming up", "orange"),
    ConnectionState.STREAMING: ("🟢 Streaming", "green"),
    ConnectionState.SIGNAL_TIMEOUT: ("🟠 Signal timeout", "darkorange"),
    ConnectionState.DISCONNECTED: ("🔴 Disconnected", "red"),
    ConnectionState.FAILED: ("🔴 Connection failed", "red"),
}

PANEL_STYLE = {
    "width": "23%",
    "display": "inline-block",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}

LINE_STYLE = {"margin": "5px 0", "fontSize": "14px"}


def button_style(color: str, disabled: bool) -> Dict[str, str]:
    return {
        "marginRight": "10px",
        "marginTop": "5px",
        "padding": "8px 16px",
        "backgroundColor": "#6c757d" if disabled else color,
        "color": "white",
        "border": "none",
        "borderRadius": "4px",
        "cursor": "not-allowed" if disabled else "pointer",
        "opacity": "0.6" if disabled else "1.0",
    }


def format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def device_option(device: DiscoveredDevice) -> Dict[str, str]:
    label = device.name or device.link_id
    if device.advertised is not None:
        label += f" · SN {device.advertised.serial_hex}"
        if device.advertised.firmware_version:
            label += f" · FW {device.advertised.firmware_version}"
    if device.rssi is not None:
        label += f" ({device.rssi} dBm)"
    return {"label": label, "value": device.link_id}


class MonitorApp:
    """Browser monitor for one AIMNet gas sensor.

    The monitor only observes the runtime: every refresh reads the latest
    published :class:`SessionSnapshot` and the telemetry buffers, and every
    button becomes one runtime command. Nothing here touches the session
    directly, so the Dash worker threads never race the session loop.

    Attributes:
        runtime: Background runtime hosting the telemetry session.
        store: Session store used for the recent-session list and exports.
        update_interval: UI refresh interval in milliseconds.
        app: Dash web application instance.
    """

    def __init__(
        self,
        runtime: MonitorRuntime,
        store: Optional[SessionStore] = None,
        update_rate: int = 2,
    ):
        self.runtime = runtime
        self.store = store
        self.update_interval = 1000 // update_rate

        self.app = dash.Dash(__name__)
        self.app.title = "AIMNet Gas Monitor"
        self._setup_layout()
        self._setup_callbacks()

    def _setup_layout(self) -> None:
        """Build the dashboard.

        Layout structure:
        - Status, connection controls, timed sampling and session export panels
        - Live telemetry plots for the connected device kind
        - Plot of the last finished timed sample
        """
        self.app.layout = html.Div(
            [
                html.H1("AIMNet Gas Monitor", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Connection Status"),
                                html.Div(id="connection-status", children="Initializing..."),
                                html.Div(id="status-message", children=""),
                                html.Div(id="connection-details", children=""),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Devices"),
                                dcc.Dropdown(
                                    id="device-dropdown",
                                    options=[],
                                    placeholder="Scanning for AIMNet sensors...",
                                ),
                                html.Div(
                                    [
                                        html.Button("🔍 Scan", id="scan-btn", n_clicks=0),
                                        html.Button("⏹️ Stop Scan", id="stop-scan-btn", n_clicks=0),
                                        html.Button("🔗 Connect", id="connect-btn", n_clicks=0),
                                        html.Button("✖ Disconnect", id="disconnect-btn", n_clicks=0),
                                        html.Button("🧹 Clear", id="clear-btn", n_clicks=0),
                                    ]
                                ),
                                html.Div(id="action-message", style={"marginTop": "8px"}),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Timed Sample"),
                                html.Label("Duration (seconds)"),
                                dcc.Input(
                                    id="sample-duration",
                                    type="number",
                                    min=1,
                                    step=1,
                                    value=self.runtime.config.default_sample_duration_seconds,
                                    style={"width": "80px", "marginLeft": "8px"},
                                ),
                                html.Div(
                                    [
                                        html.Button("▶️ Start", id="sample-start-btn", n_clicks=0),
                                        html.Button("⏹️ Stop", id="sample-stop-btn", n_clicks=0),
                                        html.Button("✖ Cancel", id="sample-cancel-btn", n_clicks=0),
                                    ]
                                ),
                                html.Div(id="sample-status", style={"marginTop": "8px"}),
                                html.Div(id="sample-summary"),
                                html.Div(
                                    [
                                        html.Button("💾 CSV", id="sample-export-csv-btn", n_clicks=0),
                                        html.Button("💾 JSON", id="sample-export-json-btn", n_clicks=0),
                                    ]
                                ),
                            ],
                            style=PANEL_STYLE,
                        ),
                        html.Div(
                            [
                                html.H3("Sessions"),
                                dcc.Dropdown(
                                    id="session-dropdown",
                                    options=[],
                                    placeholder="No finished sessions",
                                ),
                                html.Div(
                                    [
                                        html.Button("💾 CSV", id="session-export-csv-btn", n_clicks=0),
                                        html.Button("💾 JSON", id="session-export-json-btn", n_clicks=0),
                                    ]
                                ),
                                html.Div(id="export-message", style={"marginTop": "8px"}),
                            ],
                            style=PANEL_STYLE,
                        ),
                    ]
                ),
                html.Div(
                    [
                        html.Label("Time Window:"),
                        dcc.Dropdown(
                            id="time-window-dropdown",
                            options=[
                                {"label": "1 minute", "value": 60},
                                {"label": "5 minutes", "value": 300},
                                {"label": "15 minutes", "value": 900},
                                {"label": "1 hour", "value": 3600},
                                {"label": "All", "value": 0},
                            ],
                            value=300,
                            clearable=False,
                            style={"width": "200px"},
                        ),
                    ],
                    style={"padding": "10px"},
                ),
                dcc.Graph(id="live-plot"),
                dcc.Graph(id="timed-sample-plot"),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,
                    n_intervals=0,
                ),
            ]
        )

    def _setup_callbacks(self) -> None:
        """Register the refresh, command and export callbacks.

        Callback categories:
        1. **Refresh**: plots, status, device list, countdowns and button
           states from the latest snapshot (runs at the configured rate)
        2. **Commands**: scan, connect, disconnect, clear and timed sampling
        3. **Exports**: session and timed-sample exports with result messages
        """

        @self.app.callback(  # type: ignore
            [
                Output("live-plot", "figure"),
                Output("timed-sample-plot", "figure"),
                Output("connection-status", "children"),
                Output("status-message", "children"),
                Output("connection-details", "children"),
                Output("device-dropdown", "options"),
                Output("sample-status", "children"),
                Output("sample-summary", "children"),
                Output("session-dropdown", "options"),
                Output("connect-btn", "disabled"),
                Output("disconnect-btn", "disabled"),
                Output("sample-start-btn", "disabled"),
                Output("sample-stop-btn", "disabled"),
                Output("connect-btn", "style"),
                Output("disconnect-btn", "style"),
                Output("sample-start-btn", "style"),
                Output("sample-stop-btn", "style"),
            ],
            [
                Input("interval-component", "n_intervals"),
                Input("time-window-dropdown", "value"),
            ],
        )
        def refresh(n_intervals: int, time_window: Optional[int]) -> Tuple[Any, ...]:
            snapshot = self.runtime.snapshot
            buffers = self.runtime.buffers
            kind = snapshot.device_kind if snapshot else DeviceKind.UNKNOWN

            if buffers is not None:
                live_fig = create_plot_layout(buffers, kind, time_window or None)
            else:
                live_fig = create_empty_figure("Live Telemetry")
            sample_fig = create_timed_sample_plot(
                snapshot.last_timed_sample if snapshot else None
            )

            if n_intervals % 60 == 0 and snapshot is not None:
                logger.debug(
                    "🔍 UI Debug: state=%s kind=%s values=%d",
                    snapshot.state.value,
                    kind.value,
                    len(snapshot.latest_values),
                )

            if snapshot is None:
                status = html.Span("⚪ Starting...", style={"color": "gray"})
                return (live_fig, sample_fig, status, "", "", [], "", "", [],
                        True, True, True, True,
                        button_style("#28a745", True), button_style("#dc3545", True),
                        button_style("#28a745", True), button_style("#ffc107", True))

            label, color = STATUS_STYLES[snapshot.state]
            status = html.Span(
                label, style={"color": color, "fontWeight": "bold", "fontSize": "16px"}
            )

            can_connect = not snapshot.is_connected and bool(snapshot.discovered_devices)
            can_disconnect = snapshot.is_connected or snapshot.state == ConnectionState.CONNECTING
            can_sample = (
                snapshot.is_connected
                and not snapshot.is_preparing
                and snapshot.device_kind != DeviceKind.H2S
                and not snapshot.is_sampling
            )
            can_stop_sample = snapshot.is_sampling

            return (
                live_fig,
                sample_fig,
                status,
                html.P(snapshot.status_message, style=LINE_STYLE),
                self._connection_details(snapshot),
                [device_option(d) for d in snapshot.discovered_devices],
                self._sample_status(snapshot),
                self._sample_summary(snapshot),
                self._session_options(),
                not can_connect,
                not can_disconnect,
                not can_sample,
                not can_stop_sample,
                button_style("#28a745", not can_connect),
                button_style("#dc3545", not can_disconnect),
                button_style("#28a745", not can_sample),
                button_style("#ffc107", not can_stop_sample),
            )

        @self.app.callback(  # type: ignore
            Output("action-message", "children"),
            [
                Input("scan-btn", "n_clicks"),
                Input("stop-scan-btn", "n_clicks"),
                Input("connect-btn", "n_clicks"),
                Input("disconnect-btn", "n_clicks"),
                Input("clear-btn", "n_clicks"),
                Input("sample-start-btn", "n_clicks"),
                Input("sample-stop-btn", "n_clicks"),
                Input("sample-cancel-btn", "n_clicks"),
            ],
            [State("device-dropdown", "value"), State("sample-duration", "value")],
            prevent_initial_call=True,
        )
        def handle_command(*args: Any) -> str:
            link_id, duration = args[-2], args[-1]
            return self.handle_command(dash.ctx.triggered_id, link_id, duration)

        @self.app.callback(  # type: ignore
            Output("export-message", "children"),
            [
                Input("session-export-csv-btn", "n_clicks"),
                Input("session-export-json-btn", "n_clicks"),
                Input("sample-export-csv-btn", "n_clicks"),
                Input("sample-export-json-btn", "n_clicks"),
            ],
            [State("session-dropdown", "value")],
            prevent_initial_call=True,
        )
        def handle_export(*args: Any) -> str:
            return self.handle_export(dash.ctx.triggered_id, args[-1])

    def handle_command(
        self, trigger: Optional[str], link_id: Optional[str], duration: Optional[float]
    ) -> str:
        """Run the runtime command bound to button ``trigger``; return a message."""
        try:
            if trigger == "scan-btn":
                self.runtime.start_scanning()
            elif trigger == "stop-scan-btn":
                self.runtime.stop_scanning()
            elif trigger == "connect-btn":
                if not link_id:
                    return "Select a device first."
                self.runtime.connect(link_id)
            elif trigger == "disconnect-btn":
                self.runtime.disconnect()
            elif trigger == "clear-btn":
                self.runtime.clear_live_telemetry()
                return "Live telemetry cleared."
            elif trigger == "sample-start-btn":
                self.runtime.start_timed_sample(int(duration) if duration else None)
            elif trigger == "sample-stop-btn":
                self.runtime.stop_timed_sample()
            elif trigger == "sample-cancel-btn":
                self.runtime.cancel_timed_sample()
            else:
                return ""
        except RuntimeError as e:
            logger.error("❌ Command %s failed: %s", trigger, e)
            return f"❌ {e}"
        snapshot = self.runtime.snapshot
        return snapshot.status_message if snapshot else ""

    def handle_export(self, trigger: Optional[str], session_id: Optional[str]) -> str:
        """Export the selected session or the last timed sample; return a message."""
        if self.store is None:
            return "Session storage is disabled."
        fmt = "json" if trigger and trigger.endswith("json-btn") else "csv"
        try:
            if trigger and trigger.startswith("session-export"):
                session = next(
                    (s for s in self.store.recent_sessions if s.id == session_id), None
                )
                if session is None:
                    return "Select a finished session first."
                path = self.store.export_session(session, fmt)
            elif trigger and trigger.startswith("sample-export"):
                snapshot = self.runtime.snapshot
                sample = snapshot.last_timed_sample if snapshot else None
                if sample is None:
                    return "No timed sample to export."
                path = self.store.export_timed_sample(sample, fmt)
            else:
                return ""
        except RuntimeError as e:
            return f"❌ {e}"
        return f"✅ Exported {path.name}"

    def _connection_details(self, snapshot: SessionSnapshot) -> html.Div:
        lines: List[str] = []
        if snapshot.is_connected:
            lines.append(f"🔵 Device: {snapshot.device_name} ({snapshot.device_id})")
            if snapshot.device_serial:
                lines.append(f"🔢 Serial: {snapshot.device_serial}")
            if snapshot.firmware_revision:
                lines.append(f"🧩 Firmware: {snapshot.firmware_revision}")
            if snapshot.device_kind != DeviceKind.UNKNOWN:
                lines.append(f"🧪 Sensor: {snapshot.device_kind.value}")
            if snapshot.battery_percent is not None:
                battery = f"🔋 Battery: {snapshot.battery_percent}%"
                if snapshot.battery_percent <= self.runtime.config.low_battery_threshold_percent:
                    battery += " (low)"
                lines.append(battery)
            lines.append(
                f"⏱️ Connected: {format_duration(snapshot.connection_duration_seconds)}"
            )
            if snapshot.is_preparing:
                lines.append(
                    f"⏳ Warmup: {snapshot.preparation_seconds_left}s"
                    f" / {snapshot.preparation_total_seconds}s"
                )
        elif not snapshot.radio_powered_on:
            lines.append("📴 Bluetooth is off or unavailable")
        return html.Div([html.P(line, style=LINE_STYLE) for line in lines])

    @staticmethod
    def _sample_status(snapshot: SessionSnapshot) -> str:
        if snapshot.is_sampling:
            return (
                f"🔴 Sampling: {snapshot.sample_seconds_left}s left"
                f" of {snapshot.sample_duration_seconds}s"
            )
        return "⚪ Ready"

    @staticmethod
    def _sample_summary(snapshot: SessionSnapshot) -> html.Div:
        sample = snapshot.last_timed_sample
        if sample is None:
            return html.Div()
        return html.Div(
            [
                html.P(
                    f"Avg {sample.average_ppm:.2f} ppm · min {sample.min_ppm:.2f}"
                    f" · max {sample.max_ppm:.2f}",
                    style=LINE_STYLE,
                ),
                html.P(
                    f"{len(sample.readings)} readings over {sample.duration_seconds:.0f}s",
                    style={"margin": "2px 0", "fontSize": "12px", "color": "#666"},
                ),
            ]
        )

    def _session_options(self) -> List[Dict[str, str]]:
        if self.store is None:
            return []
        options = []
        for session in self.store.recent_sessions:
            started = session.started_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
            options.append(
                {
                    "label": f"{started} · {session.device_name} · {len(session.readings)} readings",
                    "value": session.id,
                }
            )
        return options

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the telemetry runtime and the web server.

        The runtime is stopped when the web server shuts down, so the
        connection and the active session are always closed on exit.
        """
        self.runtime.start()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.runtime.stop()


def create_app(
    runtime: MonitorRuntime, store: Optional[SessionStore] = None, **kwargs: int
) -> MonitorApp:
    """Factory function to create a monitor app.

    Args:
        runtime: Telemetry runtime (real BLE or mock link)
        store: Optional session store for history and exports
        **kwargs: Additional arguments for MonitorApp

    Returns:
        MonitorApp instance
    """
    return MonitorApp(runtime, store, **kwargs)
