"""Shared constants for the home monitor."""

import re

# Default configuration location (overridable with -c/--config)
CONFIG_LOCATION = "/etc/home-monitor/home-monitor.json"

# Override flag files, looked up under <files.root>/<server_id>/
ALWAYS_OFF_FILE = "alwaysoff"
ALWAYS_ON_FILE = "alwayson"

# Wake-on-LAN: 6 x 0xFF followed by 16 repetitions of the MAC
WOL_BROADCAST = "255.255.255.255"
WOL_PORT = 9

# Remote shutdown
SSH_PORT = 22
SHUTDOWN_COMMAND = "shutdown -h now"

# Probing
DEFAULT_PING_WORKERS = 16

# Dispatcher defaults
DEFAULT_WAKE_ATTEMPTS = 3
DEFAULT_SHUTDOWN_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0
DEFAULT_BACKOFF_MAX_SECONDS = 30.0
DEFAULT_CONFIRM_POLL_SECONDS = 1.0
DEFAULT_SSH_TIMEOUT_SECONDS = 10.0
DEFAULT_GRACE_SECONDS = 5.0

# Exit codes (sysexits.h)
EXIT_OK = 0
EXIT_USAGE = 64
EXIT_UNAVAILABLE = 69
EXIT_CONFIG = 78

# aa:bb:cc:dd:ee:ff or aa-bb-cc-dd-ee-ff (case-insensitive)
MAC_RE = re.compile(r'^([0-9a-f]{2})([:-])(?:[0-9a-f]{2}\2){4}[0-9a-f]{2}$', re.IGNORECASE)
