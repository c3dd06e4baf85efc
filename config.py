import os

# Base directory
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Paths
DATA_DIR = os.getenv("EXAM_DATA_DIR", os.path.join(BASE_DIR, "data"))
LOG_FILE = os.path.join(BASE_DIR, "launch.log")

# Server
DEFAULT_HOST = os.getenv("HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("PORT", "8000"))
SESSION_TTL = int(os.getenv("SESSION_TTL", "3600"))  # 1 hour

# OpenAI
MODEL_NAME = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# PDF text extraction
MAX_PDF_PAGES = 200
MAX_PDF_SIZE = 50 * 1024 * 1024  # 50 MB
MIN_CHARS_PER_PAGE = 50          # below this a page is probably scanned

# Prompt sizing
MAX_EXAM_TEXT_CHARS = 120000
HINT_CONTEXT_CHARS = 5000

# Hints
MAX_HINT_LEVEL = 3
