"""
Configuration constants for the hopwatch server.
"""

# --- Network Configuration ---
SERVER_PORT = 8080
STATIC_SERVER_PORT = 8081
STATIC_DIR = "static"

# --- Discovery Configuration ---
MAX_HOPS = 30
TRACE_PROBE_WAIT_S = 1 # Per-probe wait handed to traceroute/tracert
RESOLVE_HOSTNAMES = True # Reverse DNS for every discovered hop

# --- Ping Monitor Configuration ---
PING_TIMEOUT_S = 0.9 # Timeout handed to the ping utility itself
PING_HARD_TIMEOUT_S = 2.0 # Kill a ping subprocess that overruns its own timeout
PING_INTERVAL_S = 1.0 # Pause between monitoring rounds

# --- Event Names ---
EVENT_HOP_LIST = "hop_list_updated"
EVENT_PING_DATA = "new_ping_data"
EVENT_ERROR = "error"

# --- Logging ---
LOG_FORMAT = '%(asctime)s %(levelname)s: %(message)s'
