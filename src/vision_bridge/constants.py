"""Defaults shared by the configuration layer and the pipeline stages."""

# --- Upstream provider ---
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
CHAT_COMPLETIONS_PATH = "/chat/completions"
DEFAULT_REFERER = "https://github.com/vision-bridge/vision-bridge"
DEFAULT_APP_TITLE = "Vision Bridge"

DEFAULT_PRIMARY_MODEL = "google/gemini-2.0-flash-001"
DEFAULT_FALLBACK_MODELS: tuple[str, ...] = ("openai/gpt-4o-mini",)

# --- Timeouts (seconds) ---
DEFAULT_REQUEST_TIMEOUT = 120.0
DEFAULT_CALL_TIMEOUT = 30.0
STREAMING_TIMEOUT_MULTIPLIER = 2

# --- Retry & breaker ---
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT = 30.0

# --- Image policy ---
DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024
SUPPORTED_IMAGE_FORMATS: tuple[str, ...] = ("jpeg", "jpg", "png", "webp", "gif")
DEFAULT_IMAGE_QUALITY = 85
DEFAULT_MAX_DIMENSION = 2048
DEFAULT_MAX_PIXELS = 89_478_485  # Pillow's decompression-bomb warning threshold
DEFAULT_FETCH_TIMEOUT = 30.0
FETCH_USER_AGENT = "vision-bridge/0.1 (+image-normalizer)"

# --- Generation defaults ---
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7
TEXT_EXTRACTION_TEMPERATURE = 0.1

# --- Response shaping ---
DEFAULT_MAX_RESPONSE_LENGTH = 4000
DEFAULT_STREAM_CHUNK_SIZE = 100
TRUNCATION_MARKER = "\n\n[Response truncated]"
TRUNCATION_BOUNDARY_RATIO = 0.7

# --- Selection ---
LARGE_OUTPUT_THRESHOLD = 2000
SELECTION_HISTORY_SIZE = 100
