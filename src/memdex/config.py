"""Configuration loading from environment variables and memdex.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from memdex.errors import ConfigError

_DEFAULT_HOME = Path.home() / ".memdex"
_CONFIG_FILENAME = "memdex.toml"

PROVIDERS = ("none", "local", "openai", "sentence-transformers")
SYNC_MODES = ("debounce", "interval", "manual")
SOURCES = ("memory", "sessions")
BACKENDS = ("", "chroma")


@dataclass
class ProviderConfig:
    """Embedding provider selection."""

    name: str = "none"
    model: str | None = None
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    dimensions: int | None = None
    batch_size: int = 32
    timeout: int = 60


@dataclass
class ChunkingConfig:
    """Chunk size bounds, in characters."""

    max_chars: int = 1600
    overlap_chars: int = 320


@dataclass
class SyncConfig:
    """When and how the index follows the canonical sources."""

    mode: str = "debounce"
    debounce_seconds: float = 1.5
    interval_seconds: float = 300.0
    on_search: bool = True
    transcript_delta: bool = True
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0


@dataclass
class QueryConfig:
    """Hybrid ranking defaults."""

    max_results: int = 6
    min_score: float = 0.35
    candidate_multiplier: int = 4
    lexical: bool = True
    lexical_weight: float = 0.4
    vector_weight: float = 0.6
    snippet_max_chars: int = 700


@dataclass
class ReadConfig:
    """Bounds for the get tool."""

    default_lines: int = 200
    max_lines: int = 2000
    extensions: list[str] = field(default_factory=lambda: [".md", ".markdown"])


@dataclass
class BackendConfig:
    """Optional alternative index backend."""

    alternative: str = ""
    chroma_path: Path = _DEFAULT_HOME / "chroma"
    collection: str = "memdex_chunks"


@dataclass
class MemdexConfig:
    """Top-level memdex configuration."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    read: ReadConfig = field(default_factory=ReadConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    workspace_dir: Path = _DEFAULT_HOME / "workspace"
    sessions_dir: Path | None = None
    index_path: Path = _DEFAULT_HOME / "index.sqlite"
    pid_file: Path = _DEFAULT_HOME / "memdex.pid"
    sources: list[str] = field(default_factory=lambda: ["memory"])
    extra_paths: list[Path] = field(default_factory=list)
    log_level: str = "INFO"

    @property
    def resolved_sessions_dir(self) -> Path:
        return self.sessions_dir or self.workspace_dir / "sessions"


def _expand(value: str | Path) -> Path:
    return Path(os.path.expanduser(str(value)))


def load_config(config_path: Path | None = None) -> MemdexConfig:
    """Load configuration from environment variables and optional memdex.toml.

    Priority: environment variables > memdex.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.memdex/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    provider_data = file_data.get("provider", {})
    chunking_data = file_data.get("chunking", {})
    sync_data = file_data.get("sync", {})
    query_data = file_data.get("query", {})
    read_data = file_data.get("read", {})
    backend_data = file_data.get("backend", {})

    workspace = os.getenv("MEMDEX_WORKSPACE", file_data.get("workspace_dir", ""))
    sessions = os.getenv("MEMDEX_SESSIONS_DIR", file_data.get("sessions_dir", ""))
    dimensions = os.getenv("MEMDEX_DIMENSIONS", provider_data.get("dimensions"))

    config = MemdexConfig(
        provider=ProviderConfig(
            name=os.getenv("MEMDEX_PROVIDER", provider_data.get("name", "none")),
            model=os.getenv("MEMDEX_MODEL", provider_data.get("model")),
            base_url=os.getenv(
                "MEMDEX_BASE_URL", provider_data.get("base_url", "https://api.openai.com/v1")
            ),
            api_key=os.getenv(
                "MEMDEX_API_KEY", provider_data.get("api_key", os.getenv("OPENAI_API_KEY", ""))
            ),
            dimensions=int(dimensions) if dimensions else None,
            batch_size=int(provider_data.get("batch_size", 32)),
            timeout=int(os.getenv("MEMDEX_TIMEOUT", provider_data.get("timeout", 60))),
        ),
        chunking=ChunkingConfig(
            max_chars=int(chunking_data.get("max_chars", 1600)),
            overlap_chars=int(chunking_data.get("overlap_chars", 320)),
        ),
        sync=SyncConfig(
            mode=os.getenv("MEMDEX_SYNC_MODE", sync_data.get("mode", "debounce")),
            debounce_seconds=float(sync_data.get("debounce_seconds", 1.5)),
            interval_seconds=float(sync_data.get("interval_seconds", 300.0)),
            on_search=bool(sync_data.get("on_search", True)),
            transcript_delta=bool(sync_data.get("transcript_delta", True)),
            backoff_base_seconds=float(sync_data.get("backoff_base_seconds", 5.0)),
            backoff_max_seconds=float(sync_data.get("backoff_max_seconds", 300.0)),
        ),
        query=QueryConfig(
            max_results=int(query_data.get("max_results", 6)),
            min_score=float(query_data.get("min_score", 0.35)),
            candidate_multiplier=int(query_data.get("candidate_multiplier", 4)),
            lexical=bool(query_data.get("lexical", True)),
            lexical_weight=float(query_data.get("lexical_weight", 0.4)),
            vector_weight=float(query_data.get("vector_weight", 0.6)),
            snippet_max_chars=int(query_data.get("snippet_max_chars", 700)),
        ),
        read=ReadConfig(
            default_lines=int(read_data.get("default_lines", 200)),
            max_lines=int(read_data.get("max_lines", 2000)),
            extensions=[e.lower() for e in read_data.get("extensions", [".md", ".markdown"])],
        ),
        backend=BackendConfig(
            alternative=os.getenv("MEMDEX_BACKEND", backend_data.get("alternative", "")),
            chroma_path=_expand(backend_data.get("chroma_path", _DEFAULT_HOME / "chroma")),
            collection=backend_data.get("collection", "memdex_chunks"),
        ),
        workspace_dir=_expand(workspace) if workspace else _DEFAULT_HOME / "workspace",
        sessions_dir=_expand(sessions) if sessions else None,
        index_path=_expand(
            os.getenv(
                "MEMDEX_INDEX_PATH", file_data.get("index_path", _DEFAULT_HOME / "index.sqlite")
            )
        ),
        pid_file=_expand(file_data.get("pid_file", _DEFAULT_HOME / "memdex.pid")),
        sources=list(file_data.get("sources", ["memory"])),
        extra_paths=[_expand(p) for p in file_data.get("extra_paths", [])],
        log_level=os.getenv("MEMDEX_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    validate_config(config)
    return config


def validate_config(config: MemdexConfig) -> None:
    """Raise ConfigError for contradictory or out-of-range settings."""
    if config.provider.name not in PROVIDERS:
        raise ConfigError(
            f"Unknown provider: {config.provider.name!r} (expected one of {PROVIDERS})"
        )
    if config.sync.mode not in SYNC_MODES:
        raise ConfigError(f"Unknown sync mode: {config.sync.mode!r} (expected one of {SYNC_MODES})")
    if config.backend.alternative not in BACKENDS:
        raise ConfigError(f"Unknown alternative backend: {config.backend.alternative!r}")
    if config.backend.alternative == "chroma" and config.provider.name == "none":
        raise ConfigError("The chroma backend stores vectors and needs an embedding provider")
    unknown = [s for s in config.sources if s not in SOURCES]
    if unknown:
        raise ConfigError(f"Unknown sources: {unknown}")
    if not config.query.lexical and config.provider.name == "none":
        raise ConfigError("Lexical search is disabled and no embedding provider is configured")
    if config.chunking.max_chars < 64:
        raise ConfigError("chunking.max_chars must be >= 64")
    if not 0 <= config.chunking.overlap_chars < config.chunking.max_chars:
        raise ConfigError("chunking.overlap_chars must be in [0, max_chars)")
    if config.query.lexical_weight < 0 or config.query.vector_weight < 0:
        raise ConfigError("hybrid weights must be non-negative")
    if config.query.lexical_weight + config.query.vector_weight <= 0:
        raise ConfigError("at least one hybrid weight must be positive")
    if config.query.lexical and config.provider.name != "none":
        # The best exact-term hit scores at least lexical_weight / (sum of weights).
        lexical_floor = config.query.lexical_weight / (
            config.query.lexical_weight + config.query.vector_weight
        )
        if lexical_floor < config.query.min_score:
            raise ConfigError(
                f"query.min_score {config.query.min_score} would drop exact-term matches "
                f"(lexical share of the hybrid score is {lexical_floor:.2f})"
            )
    if config.query.max_results < 1 or config.query.candidate_multiplier < 1:
        raise ConfigError("query.max_results and query.candidate_multiplier must be >= 1")
    if config.read.default_lines < 1 or config.read.max_lines < config.read.default_lines:
        raise ConfigError("read.default_lines must be >= 1 and <= read.max_lines")
