# labor_live/main_utils/config.py

"""
Shared configuration values for the live session engine.
Values are read from the environment once at import time; the entry point
calls dotenv.load_dotenv() before importing this module.
"""
import os


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


# --- STATIC PATHS ---
LOG_FILE = os.getenv("LOG_FILE") or None

# --- CREDENTIALS ---
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY")

# --- LIVE MODEL ---
LIVE_MODEL = os.getenv("LIVE_MODEL", "gemini-2.5-flash-native-audio-preview-09-2025")
LIVE_VOICE = os.getenv("LIVE_VOICE", "Zephyr")
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "30"))  # seconds

# --- MEDIA ---
SEND_SAMPLE_RATE = 16000  # PCM rate sent to the model
RECEIVE_SAMPLE_RATE = 24000  # PCM rate of model speech
AUDIO_FRAME_SAMPLES = 1024  # samples per outbound audio frame
FRAME_RATE = float(os.getenv("FRAME_RATE", "5"))  # video frames per second
JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "70"))  # 0-100

# --- DOCUMENT SEARCH ---
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:3001")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-004")
EMBEDDING_DIMENSIONS = 768
SEARCH_LIMIT = int(os.getenv("SEARCH_LIMIT", "5"))
SEARCH_TIMEOUT = float(os.getenv("SEARCH_TIMEOUT", "15"))

# --- DEBUG ---
LIVE_DEBUG = _env_bool("LIVE_DEBUG")

SYSTEM_INSTRUCTION = (
    "You are Labor AI Pro, an expert assistant for skilled trade professionals like "
    "electricians, plumbers, and construction workers. Provide clear, concise, and "
    "safety-conscious advice. When analyzing images or video, focus on tools, materials, "
    "safety equipment (PPE), and work procedures. Your tone should be professional, "
    "helpful, and direct. When a question needs codes, standards, manuals or company "
    "procedures, call the search_documents tool and ground your answer in what it returns, "
    "citing the source document."
)
