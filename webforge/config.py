"""
Runtime settings. Every value can be overridden with a WEBFORGE_* environment variable.
"""
import os
from pathlib import Path


def env_str(name: str, default: str) -> str:
    v = os.environ.get(f"WEBFORGE_{name}")
    return v.strip() if v and v.strip() else default


def env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(f"WEBFORGE_{name}", default))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(f"WEBFORGE_{name}", default))
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: bool) -> bool:
    v = os.environ.get(f"WEBFORGE_{name}")
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


# ── Language model ────────────────────────────────────────────────────────────
PROVIDER        = env_str("PROVIDER", "ollama")
OLLAMA_URL      = env_str("OLLAMA_URL", "http://localhost:11434")
OLLAMA_MODEL    = env_str("OLLAMA_MODEL", "qwen2.5-coder:14b")
OPENAI_BASE_URL = env_str("OPENAI_BASE_URL", "https://api.openai.com")
OPENAI_API_KEY  = env_str("OPENAI_API_KEY", os.environ.get("OPENAI_API_KEY", ""))
OPENAI_MODEL    = env_str("OPENAI_MODEL", "gpt-4o-mini")
TEMPERATURE     = env_float("TEMPERATURE", 0.2)
MODEL_TIMEOUT   = env_float("MODEL_TIMEOUT", 180.0)   # wall clock per model request

# ── Auto-fix loop ─────────────────────────────────────────────────────────────
MAX_FIX            = env_int("MAX_FIX", 3)
MAX_FORMAT_RETRIES = env_int("MAX_FORMAT_RETRIES", 2)
FIX_SETTLE_DELAY   = env_float("FIX_SETTLE_DELAY", 2.5)
INFER_DEPS         = env_bool("INFER_DEPS", False)

# ── Preview ───────────────────────────────────────────────────────────────────
PREVIEW_HOST   = env_str("PREVIEW_HOST", "127.0.0.1")
PREVIEW_PORT   = env_int("PREVIEW_PORT", 3000)
READY_TIMEOUT  = env_float("READY_TIMEOUT", 180.0)
PROBE_INTERVAL = 0.65
PROBE_TIMEOUT  = 2.5
KILL_GRACE     = 1.6
MAX_LOG_LINES  = env_int("MAX_LOG_LINES", 900)
ERROR_LOG_TAIL = 120

# ── Service ───────────────────────────────────────────────────────────────────
WS_HOST  = env_str("WS_HOST", "127.0.0.1")
WS_PORT  = env_int("WS_PORT", 7825)
LOGS_DIR = Path(env_str("LOGS_DIR", str(Path.home() / ".webforge" / "logs")))
