"""
Search Configuration - Centralized settings for the note search engine.

Uses environment variables with sensible defaults. All paths are resolved
to absolute paths for reliability.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class SearchConfig:
    """
    Configuration for the indexing and retrieval engine.

    All persisted state lives under data_dir (default ~/.notesearch).
    The Joplin database path is optional: when unset it is auto-detected.
    """

    # --- Paths ---
    db_path: Optional[Path] = None
    data_dir: Path = field(default_factory=lambda: Path.home() / ".notesearch")

    # --- Embedding model ---
    model_name: str = "BAAI/bge-small-en-v1.5"
    dimension: int = 384
    use_onnx: bool = True           # ONNX Runtime backend (falls back to PyTorch)
    embed_batch_size: int = 64      # Notes per embed/insert/progress step

    # --- HNSW ---
    hnsw_m: int = 16                # Graph fan-out
    hnsw_ef_construction: int = 200 # Build-time breadth
    hnsw_ef_search: int = 50        # Query-time breadth
    min_capacity: int = 2000        # Index is sized max(2 * notes, min_capacity)

    # --- Query ---
    default_top_k: int = 25
    min_score: float = 0.30         # Relevance floor

    # --- Watcher ---
    poll_interval_s: float = 10.0
    quiet_period_s: float = 30.0    # Debounce window after the last DB write

    # --- Timeouts ---
    model_load_timeout_s: float = 600.0
    batch_timeout_s: float = 300.0  # Max time without indexing progress

    # --- Compaction ---
    compaction_ratio: float = 0.25  # Stale entries / index size before rebuilding
    rebuild_interval_s: float = 300.0

    # --- Concurrency ---
    worker_threads: int = 4

    def __post_init__(self):
        """Ensure all paths are absolute and the data directory exists."""
        self.data_dir = Path(self.data_dir).expanduser().resolve()
        if self.db_path is not None:
            self.db_path = Path(self.db_path).expanduser().resolve()

        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def index_path(self) -> Path:
        """Where the HNSW index is persisted."""
        return self.data_dir / "index.bin"

    @property
    def model_cache_dir(self) -> Path:
        """Durable cache for downloaded model weights."""
        return self.data_dir / "models"

    @classmethod
    def from_env(cls) -> "SearchConfig":
        """
        Create config from environment variables.

        Supported env vars:
            NOTESEARCH_DB_PATH: Path to the Joplin database.sqlite
            NOTESEARCH_DATA_DIR: Directory for the index and model cache
            NOTESEARCH_MODEL: Sentence-transformers model name
            NOTESEARCH_USE_ONNX: Use the ONNX backend (1/0)
            NOTESEARCH_BATCH_SIZE: Notes per embedding batch
            NOTESEARCH_POLL_INTERVAL: Watcher poll interval (seconds)
            NOTESEARCH_QUIET_PERIOD: Watcher debounce window (seconds)
        """
        config = cls()

        if db_path := os.environ.get("NOTESEARCH_DB_PATH"):
            config.db_path = Path(db_path)

        if data_dir := os.environ.get("NOTESEARCH_DATA_DIR"):
            config.data_dir = Path(data_dir)

        if model := os.environ.get("NOTESEARCH_MODEL"):
            config.model_name = model

        if use_onnx := os.environ.get("NOTESEARCH_USE_ONNX"):
            config.use_onnx = _env_flag(use_onnx)

        if batch_size := os.environ.get("NOTESEARCH_BATCH_SIZE"):
            config.embed_batch_size = int(batch_size)

        if poll := os.environ.get("NOTESEARCH_POLL_INTERVAL"):
            config.poll_interval_s = float(poll)

        if quiet := os.environ.get("NOTESEARCH_QUIET_PERIOD"):
            config.quiet_period_s = float(quiet)

        config.__post_init__()
        return config


# Singleton default config
_default_config: SearchConfig | None = None


def get_config() -> SearchConfig:
    """Get the default configuration (singleton)."""
    global _default_config
    if _default_config is None:
        _default_config = SearchConfig.from_env()
    return _default_config


def set_config(config: SearchConfig) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
