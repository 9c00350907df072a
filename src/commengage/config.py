# /commengage/config.py
"""
Centralized configuration for the CommEngage answer engine.
Includes model names, paths, retrieval/summary tuning, and hardware detection.
"""
import functools
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)

# ==============================================================================
# GPU DETECTION & SETUP
# ==============================================================================
def _load_torch():
    try:
        import torch  # Imported lazily; only the embedding model needs it.
        return torch
    except ImportError:
        return None


@functools.cache
def detect_gpu_setup():
    """Detects and prints GPU information on first access only."""
    torch = _load_torch()
    if torch is not None and torch.cuda.is_available():
        device_name = torch.cuda.get_device_name(0)
        memory_gb = torch.cuda.get_device_properties(0).total_memory / (1024**3)
        console.print(Panel(
            f"[bold green]GPU Detected![/bold green]\n"
            f"Device: {device_name}\n"
            f"Memory: {memory_gb:.1f} GB",
            title="Embedding Device",
            border_style="green"
        ))
        return {'device': 'cuda', 'name': device_name}
    console.print("[yellow]No GPU detected. Embeddings will run on CPU.[/yellow]")
    return {'device': 'cpu', 'name': 'cpu'}


@functools.cache
def get_model_kwargs() -> dict[str, str]:
    return {'device': detect_gpu_setup()['device']}


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Model Selection ---
USE_API_LLM = _env_bool("USE_API_LLM", False)              # True for Groq API, False for local Ollama
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "granite3.3:2b")
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "gemma2-9b-it")
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2")

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/commengage/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

CACHE_DIR = Path(os.getenv("CACHE_DIR", str(_DATA_DIR / "runtime_cache")))
CONTENT_DB_PATH = Path(os.getenv("CONTENT_DB_PATH", str(CACHE_DIR / "community_content.sqlite")))

# --- Summary Tuning ---
# Content with this many words or fewer is never summarized.
SUMMARY_MIN_WORDS = _env_int("SUMMARY_MIN_WORDS", 50, minimum=1)

# --- Question Answering Tuning ---
QA_TOP_K = _env_int("QA_TOP_K", 5, minimum=1)
QA_HISTORY_TURNS = _env_int("QA_HISTORY_TURNS", 4, minimum=0)
QA_CHUNK_MAX_CHARS = _env_int("QA_CHUNK_MAX_CHARS", 500, minimum=32)

# --- Upstream Timeouts ---
EMBED_TIMEOUT_S = _env_float("EMBED_TIMEOUT_S", 30.0, minimum=0.1)
SUMMARIZE_TIMEOUT_S = _env_float("SUMMARIZE_TIMEOUT_S", 60.0, minimum=0.1)
GENERATE_TIMEOUT_S = _env_float("GENERATE_TIMEOUT_S", 120.0, minimum=0.1)

# --- Create necessary directories ---
CACHE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
METRICS_LOG_DIR = os.getenv("METRICS_LOG_DIR") or None
configure_logging(LOG_PATH)
