"""
Defines application-wide constants, paths, and endpoint templates.

This module centralizes configuration for paths, URLs, polling cadence and
download behavior so the rest of the package never hardcodes them.
"""

from pathlib import Path

from ._version import __version__

# --- Application Path Setup ---
# Use a user-specific directory for logs to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.pt-historical'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
DEFAULT_OUTPUT_DIR: Path = Path('./output')

# --- Historical PowerTrack API ---
BASE_URL = 'https://historical.gnip.com/accounts/'
JOBS_ENDPOINT = 'jobs.json'

REQUEST_HEADERS = {
    'User-Agent': f'pt-historical/{__version__}',
    'Content-Type': 'application/json',
}
REQUEST_TIMEOUTS = (10, 60)  # (connect_timeout, read_timeout)

ACCEPT_BODY = '{"status":"accept"}'
REJECT_BODY = '{"status":"reject"}'

# --- Polling cadence (seconds) ---
SUBMIT_CONFIRM_SECONDS = 60
SUBMIT_CONFIRM_ATTEMPTS = 10
POLL_INTERVAL_SECONDS = 5 * 60
MAX_POLL_ERRORS = 3

# --- Bulk download ---
DEFAULT_CONCURRENCY_LIMIT = 30
DEFAULT_BATCH_SIZE = 30
COMPRESSED_MARKER = '.gz'
PARTIAL_SUFFIX = '.part'
DOWNLOAD_CHUNK_SIZE = 64 * 1024
DOWNLOAD_SOCK_READ_TIMEOUT = 60

# --- Retrieval finisher ---
SUSPECT_MINUTES_FILE = 'suspect_minutes.txt'
