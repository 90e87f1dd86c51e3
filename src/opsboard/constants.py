STATE_DIR_NAME = ".opsboard"
CONFIG_FILE = "config.yaml"
CREDENTIALS_FILE = "credentials.json"
LOG_FILE = "opsboard.log"

API_PREFIX = "/api/v1"
DEFAULT_BASE_URL = "http://127.0.0.1:8080"
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_SEARCH_DEBOUNCE_MS = 350
DEFAULT_PAGE_SIZE = 50
COMPLETED_PAGE_SIZE = 100

GENERIC_FAILURE_MESSAGE = "Service temporarily unavailable"

TITLE_MAX_LENGTH = 120

SORT_KEYS = ("priority", "deadline", "reward", "updated")
DEFAULT_SORT_KEY = "priority"

PENDING_KIND_EXECUTE = "execute"
PENDING_KIND_REVIEW = "review"

DISPLAY_NAME_MAX_LENGTH = 40
HEADLINE_MAX_LENGTH = 80
BIO_MAX_LENGTH = 400
PASSWORD_MIN_LENGTH = 8
