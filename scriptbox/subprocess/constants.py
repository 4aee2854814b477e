"""Constants shared across subprocess components.

Centralized so the worker, the execution session and the host-side
defaults cannot drift apart.
"""

# Virtual filename user scripts are compiled under; frames with this
# filename are the only ones attributed to the script
SCRIPT_FILENAME = "<script>"

DEFAULT_TRANSCRIPT_CAPACITY = 1000
DEFAULT_GRACE_PERIOD_MS = 100
DEFAULT_POLL_INTERVAL_MS = 50

# Shortest period an interval may be re-armed with
MIN_INTERVAL_MS = 1

# Longest content a single record may carry, in characters
MAX_RECORD_CHARS = 64 * 1024
TRUNCATION_MARKER = "... [truncated {count} chars]"

# Total encoded size of ordinary records; keeps the completion message
# well inside the 10 MiB frame limit
DEFAULT_TRANSCRIPT_BYTES = 8 * 1024 * 1024

TIMEOUT_MESSAGE = "Execution timeout after {timeout_ms}ms"

# Prefixes for records produced by the dialog shims
ALERT_PREFIX = "[alert]"
CONFIRM_PREFIX = "[confirm]"
PROMPT_PREFIX = "[prompt]"
