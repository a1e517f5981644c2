"""
Streamlit gamma radiation dashboard (simulated or live WebSocket feed)

Features
- Live cards for CPS, CPM, dose rate (µSv/h) and activity (Ci / Bq)
- SAFE / DANGER banner when the dose rate is above the configured threshold
- Rolling chart of the last readings with the threshold drawn in
- Connection badge, last update time and error advisories

Run locally
  pip install -e .
  streamlit run dashboard.py

Notes
- Default mode is **Mock** (simulated detector, one reading every 2 s).
- Switch DATA_SOURCE to "WebSocket" in dashboard_config.py and set WS_URL to
  read from a live bridge.
"""
from __future__ import annotations

import logging
from datetime import datetime

import plotly.express as px
import streamlit as st
from streamlit_autorefresh import st_autorefresh

import dashboard_config as cfg
from live_session import ConnectionStatus, LiveSession, SessionSettings, SessionState
from push_sources import PushSourceError, create_source

logging.basicConfig(
    level=getattr(logging, str(cfg.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger("dashboard")

# ----------------------------- Session lifecycle ----------------------------- #

def build_session() -> LiveSession:
    source = create_source(cfg.DATA_SOURCE)
    settings = SessionSettings(
        danger_threshold=cfg.DANGER_THRESHOLD_USVH,
        max_points=cfg.MAX_CHART_POINTS,
        data_path=cfg.DATA_PATH,
        connected_path=cfg.CONNECTED_PATH,
        stale_after_s=cfg.STALE_AFTER_S,
    )
    session = LiveSession(source, settings)
    session.start()
    try:
        source.open()
    except Exception:
        teardown_session(session)
        raise
    return session


def teardown_session(session: LiveSession | None) -> None:
    if session is None:
        return
    try:
        session.stop()
    finally:
        session.source.close()


# ----------------------------- Rendering ----------------------------- #

def format_count(value: float) -> str:
    return f"{value:,.0f}"


def format_curie(value: float) -> str:
    return f"{value:.6f}" if value < 1 else f"{value:,.3f}"


def render_status(state: SessionState) -> None:
    color = state.status_color
    st.markdown(
        f"<div style='padding:0.8rem;border-radius:0.5rem;background:{color};"
        f"color:white;text-align:center;font-size:1.6rem;font-weight:700'>"
        f"{state.status_text} · {state.reading.dose_usv:.3f} µSv/h</div>",
        unsafe_allow_html=True,
    )
    if state.alert:
        st.error(f"Dose rate above {cfg.DANGER_THRESHOLD_USVH} µSv/h. Leave the area.")


def render_connection(state: SessionState) -> None:
    badge = {
        ConnectionStatus.CONNECTED: ":green[● Connected]",
        ConnectionStatus.CONNECTING: ":orange[● Connecting…]",
        ConnectionStatus.DISCONNECTED: ":red[● Disconnected]",
    }[state.status]
    cols = st.columns([1, 2])
    cols[0].markdown(badge)
    last = state.last_update.strftime("%X") if state.last_update else "Never"
    cols[1].caption(f"Last update: {last}")
    if state.is_stale(datetime.now()):
        st.warning("Readings are stale: no data received recently.")
    if state.error:
        st.warning(state.error)


def render_cards(state: SessionState) -> None:
    r = state.reading
    cols = st.columns(5)
    cols[0].metric("Counts / s", format_count(r.cps))
    cols[1].metric("Counts / min", format_count(r.cpm))
    cols[2].metric("Dose rate (µSv/h)", f"{r.dose_usv:.3f}")
    cols[3].metric("Activity (Ci)", format_curie(r.activity_ci))
    cols[4].metric("Activity (Bq)", format_count(r.activity_bq))


def render_chart(state: SessionState) -> None:
    df = state.frame()
    if df.empty:
        st.info("Waiting for data…")
        return
    fig = px.line(df, x="timestamp", y="uSvph", markers=True,
                  title="Dose rate (µSv/h)", height=350)
    fig.add_hline(y=cfg.DANGER_THRESHOLD_USVH, line_dash="dash", line_color="red")
    fig.update_layout(
        yaxis=dict(type="linear", showgrid=True, zeroline=True, rangemode="tozero"),
        xaxis=dict(showgrid=True, title=None),
        uirevision="keep",  # preserve zoom/viewport
        transition=dict(duration=200),
    )
    st.plotly_chart(fig)


def main() -> None:
    st.set_page_config(page_title="Gamma Monitor", layout="wide")

    ss = st.session_state
    ss.setdefault("session", None)

    with st.sidebar:
        st.subheader("Source")
        st.caption(f"{cfg.DATA_SOURCE}" + (f" · {cfg.WS_URL}" if cfg.DATA_SOURCE == "WebSocket" else ""))
        if st.button("Reconnect", key="reconnect"):
            teardown_session(ss.session)
            ss.session = None

    if ss.session is None:
        try:
            ss.session = build_session()
        except PushSourceError as e:
            LOGGER.error("Cannot build data source: %s", e)
            st.error(f"Data source not started: {e}")
            return

    session: LiveSession = ss.session
    st_autorefresh(interval=cfg.REFRESH_MS, key="_autorefresh")

    # Drain queued source events on this script thread
    session.source.poll()
    state = session.snapshot()

    st.title("Gamma Ray Monitor")
    render_status(state)
    render_connection(state)
    render_cards(state)
    render_chart(state)


if __name__ == "__main__":
    main()
