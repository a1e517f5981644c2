# Central configuration for the gamma monitor dashboard
# Startup settings only; nothing here is changed while a session runs.

# Data source: "Mock" or "WebSocket"
DATA_SOURCE = "Mock"

# WebSocket URL used when DATA_SOURCE == "WebSocket"
WS_URL = "ws://localhost:5000/stream"

# Path the sensor publishes readings under
DATA_PATH = "radiation"

# Reserved metadata path carrying the transport's connected flag
CONNECTED_PATH = ".info/connected"

# Dose rate above which the dashboard shows DANGER (µSv/h, strictly greater)
DANGER_THRESHOLD_USVH = 2.0

# Number of dose-rate samples kept for the chart
MAX_CHART_POINTS = 20

# Simulated generator publishes one reading every N seconds
UPDATE_INTERVAL_S = 2.0

# Page auto-refresh interval in milliseconds
REFRESH_MS = 1000

# Seconds without data before a reading is flagged stale (None disables)
STALE_AFTER_S = None

# Maximum number of inbound WebSocket events held between page refreshes
WS_QUEUE_LIMIT = 10000

LOG_LEVEL = "INFO"
