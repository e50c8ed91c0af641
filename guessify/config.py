"""Runtime settings for the game client, read from the environment."""
import os

# Rendezvous server (socket.io) and track catalog API
SERVER_URL = os.getenv("GUESSIFY_SERVER_URL", "http://localhost:3001")
API_BASE_URL = os.getenv("GUESSIFY_API_BASE_URL", "http://localhost:8080").rstrip("/")

# Audio
DEFAULT_VOLUME = float(os.getenv("GUESSIFY_DEFAULT_VOLUME", "0.6"))
# Catalog previews are 30 second clips
PREVIEW_DURATION_SEC = float(os.getenv("GUESSIFY_PREVIEW_DURATION_SEC", "30"))

# Round timing
ROUND_SETTLE_SEC = float(os.getenv("GUESSIFY_ROUND_SETTLE_SEC", "1.0"))
SNIPPET_DELAY_SEC = float(os.getenv("GUESSIFY_SNIPPET_DELAY_SEC", "1.0"))

HTTP_TIMEOUT_SEC = float(os.getenv("GUESSIFY_HTTP_TIMEOUT_SEC", "10"))
LOG_LEVEL = os.getenv("GUESSIFY_LOG_LEVEL", "INFO").upper()
