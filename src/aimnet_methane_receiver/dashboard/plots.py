"""
Plot components and layouts for the gas monitor.
"""

from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import plotly.graph_objects as go  # type: ignore
from plotly.subplots import make_subplots  # type: ignore

from .. import codec
from ..buffers import TelemetryBufferSet
from ..models import DeviceKind, TimedSample

Series = Tuple[List[float], List[float]]


def relative_seconds(timestamps: Sequence[datetime]) -> List[float]:
    if not timestamps:
        return []
    origin = timestamps[0]
    return [(ts - origin).total_seconds() for ts in timestamps]


def select_window(
    timestamps: Sequence[datetime],
    values: Sequence[float],
    window_seconds: Optional[float] = None,
    max_points: Optional[int] = None,
) -> Series:
    """Cut a channel to the trailing time window and decimate for rendering.

    The x values are seconds relative to the first point kept. Decimation
    always retains the latest sample.
    """
    ts = list(timestamps)
    vals = list(values)
    if window_seconds and ts:
        cutoff = ts[-1].timestamp() - window_seconds
        start = next((i for i, t in enumerate(ts) if t.timestamp() >= cutoff), len(ts))
        ts, vals = ts[start:], vals[start:]

    if max_points and len(ts) > max_points > 1:
        step = -(-len(ts) // max_points)
        # Choose offset so the last element is retained
        offset = (len(ts) - 1) % step
        ts, vals = ts[offset::step], vals[offset::step]

    return relative_seconds(ts), vals


def padded_range(values: Sequence[float], min_padding: float) -> Optional[List[float]]:
    if not values:
        return None
    low, high = min(values), max(values)
    padding = max(min_padding, (high - low) * 0.1)
    return [low - padding, high + padding]


def _channel_series(
    buffers: TelemetryBufferSet,
    name: str,
    window_seconds: Optional[float],
    max_points: Optional[int],
) -> Series:
    channel = buffers.channel(name)
    return select_window(channel.timestamps(), channel.values(), window_seconds, max_points)


def create_empty_figure(title: str, message: str = "No data available") -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(
        x=0.5,
        y=0.5,
        text=message,
        showarrow=False,
        xref="paper",
        yref="paper",
        font=dict(size=16, color="gray"),
    )
    fig.update_layout(title=title, height=300)
    return fig


def create_methane_plot_layout(
    buffers: TelemetryBufferSet,
    time_window_seconds: Optional[float] = 300,
    max_points_cap: Optional[int] = 400,
) -> go.Figure:
    """Create a 2x2 subplot layout with methane, temperature and humidity."""
    fig = make_subplots(
        rows=2,
        cols=2,
        subplot_titles=(
            "Methane (ppm)",
            "Raw CH4 Signal",
            "Temperature (°C)",
            "Humidity (%RH)",
        ),
        vertical_spacing=0.15,
        horizontal_spacing=0.10,
    )

    panels = [
        (codec.CH4_PPM, 1, 1, "CH4 ppm", "seagreen", 1.0),
        (codec.CH4_RAW, 1, 2, "CH4 raw", "gray", 10.0),
        (codec.TEMPERATURE_C[0], 2, 1, "Temperature", "orange", 1.0),
        (codec.HUMIDITY_RH, 2, 2, "Humidity", "steelblue", 2.0),
    ]
    has_data = False
    for name, row, col, label, color, min_padding in panels:
        x, y = _channel_series(buffers, name, time_window_seconds, max_points_cap)
        if not y:
            fig.add_annotation(
                x=0.5,
                y=0.5,
                text="No data available",
                showarrow=False,
                xref="x domain",
                yref="y domain",
                font=dict(size=14, color="gray"),
                row=row,
                col=col,
            )
            continue
        has_data = True
        fig.add_trace(
            go.Scatter(
                x=x,
                y=y,
                mode="lines",
                name=label,
                line=dict(color=color, width=2),
                showlegend=False,
            ),
            row=row,
            col=col,
        )
        y_range = padded_range(y, min_padding)
        if name == codec.CH4_PPM and y_range is not None:
            y_range[0] = max(0.0, y_range[0])
        fig.update_yaxes(range=y_range, row=row, col=col)

    if has_data:
        fig.update_xaxes(title_text="Time (seconds)")
    fig.update_layout(height=600, margin=dict(l=50, r=50, t=80, b=50))
    return fig


def create_h2s_plot_layout(
    buffers: TelemetryBufferSet,
    time_window_seconds: Optional[float] = 300,
    max_points_cap: Optional[int] = 400,
) -> go.Figure:
    """Create a single plot with both H2S channels."""
    fig = go.Figure()
    traces = [
        (codec.H2S_PRIMARY, "Primary (ppb)", "firebrick"),
        (codec.H2S_SECONDARY, "Secondary (ppb)", "darkorange"),
    ]
    for name, label, color in traces:
        x, y = _channel_series(buffers, name, time_window_seconds, max_points_cap)
        if y:
            fig.add_trace(
                go.Scatter(x=x, y=y, mode="lines", name=label, line=dict(color=color, width=2))
            )
    if not fig.data:
        return create_empty_figure("H2S (ppb)")

    fig.update_layout(
        title="H2S (ppb)",
        xaxis_title="Time (seconds)",
        yaxis_title="Concentration (ppb)",
        showlegend=True,
        height=600,
        margin=dict(l=50, r=20, t=50, b=50),
        legend=dict(orientation="h", yanchor="bottom", y=1.02, xanchor="right", x=1),
    )
    return fig


def create_plot_layout(
    buffers: TelemetryBufferSet,
    kind: DeviceKind,
    time_window_seconds: Optional[float] = 300,
    max_points_cap: Optional[int] = 400,
) -> go.Figure:
    if kind == DeviceKind.H2S:
        return create_h2s_plot_layout(buffers, time_window_seconds, max_points_cap)
    return create_methane_plot_layout(buffers, time_window_seconds, max_points_cap)


def create_timed_sample_plot(sample: Optional[TimedSample]) -> go.Figure:
    """Plot the readings of a finished timed sample with its average."""
    title = "Timed Sample"
    if sample is None or not sample.readings:
        return create_empty_figure(title, "No timed sample yet")

    x = relative_seconds([r.timestamp for r in sample.readings])
    y = [r.ppm for r in sample.readings]

    fig = go.Figure()
    fig.add_trace(
        go.Scatter(
            x=x,
            y=y,
            mode="lines+markers",
            name="CH4 ppm",
            line=dict(color="seagreen", width=2),
        )
    )
    fig.add_hline(
        y=sample.average_ppm,
        line_dash="dash",
        line_color="gray",
        annotation_text=f"avg {sample.average_ppm:.2f} ppm",
    )
    fig.update_layout(
        title=f"{title} ({sample.duration_seconds:.0f}s, {len(sample.readings)} readings)",
        xaxis_title="Time (seconds)",
        yaxis_title="Methane (ppm)",
        height=300,
        margin=dict(l=50, r=20, t=50, b=50),
    )
    return fig
