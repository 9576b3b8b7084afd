import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from sandbox_agent.tools.web import web_search_tool_enabled
from sandbox_agent.util import mask_secret

DEFAULT_ENV_PATH = Path(".env")

_SECRET_FIELDS = {"openrouter_api_key", "hf_token"}


@dataclass(frozen=True)
class Config:
    sandbox_root: Path
    data_dir: Path
    openrouter_api_key: str
    openrouter_model: str
    openrouter_base_url: str
    openrouter_timeout_sec: int
    hf_token: str
    embedding_backend: str
    embedding_model: str
    embedding_url: str
    context_recent_actions: int
    context_recent_messages: int
    context_format: str
    semantic_search_limit: int
    delete_retry_delay_ms: int
    index_max_file_bytes: int
    enable_web_search: bool
    host: str
    port: int
    log_level: str

    @property
    def memory_db_path(self) -> Path:
        return self.data_dir / "memory.db"

    @property
    def vector_db_path(self) -> Path:
        return self.data_dir / "vectors.db"

    def masked(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, value in asdict(self).items():
            if key in _SECRET_FIELDS:
                out[key] = mask_secret(str(value)) or "(not set)"
            elif isinstance(value, Path):
                out[key] = str(value)
            else:
                out[key] = value
        return out


def load_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    if not path.exists():
        return data
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            v = v.strip()
            if len(v) >= 2 and v[0] == v[-1] and v[0] in {"'", '"'}:
                v = v[1:-1]
            data[k.strip()] = v
    except OSError as exc:
        print(f"Failed to read .env: {exc}", file=sys.stderr)
    return data


def get_env_value(key: str, env_file: Mapping[str, str]) -> Optional[str]:
    return os.environ.get(key) or env_file.get(key)


def apply_env_defaults(env_file: Mapping[str, str], target_env: Optional[Dict[str, str]] = None) -> int:
    """Populate missing process env vars from .env-style mapping.

    Existing environment values are never overwritten.
    Returns the number of keys applied.
    """
    target = target_env if target_env is not None else os.environ  # type: ignore[assignment]
    applied = 0
    for raw_key, raw_value in (env_file or {}).items():
        key = str(raw_key or "").strip()
        if not key:
            continue
        if key in target and str(target.get(key) or "").strip():
            continue
        target[key] = str(raw_value or "")
        applied += 1
    return applied


def _read_int(env: Mapping[str, str], key: str, default: int, minimum: int = 1) -> int:
    raw = str(env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _read_str(env: Mapping[str, str], key: str, default: str) -> str:
    return str(env.get(key) or "").strip() or default


def load_config(env_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """Resolve configuration from the process environment and an optional .env file.

    Real environment variables win over the file.  The sandbox and data
    directories are created if missing.
    """
    env_file = load_env_file(env_path or DEFAULT_ENV_PATH)
    source: Dict[str, str] = dict(env_file)
    source.update({k: v for k, v in (environ if environ is not None else os.environ).items() if str(v).strip()})

    hf_token = _read_str(source, "HF_TOKEN", "")
    backend = _read_str(source, "EMBEDDING_BACKEND", "huggingface" if hf_token else "hashing").lower()
    context_format = _read_str(source, "CONTEXT_FORMAT", "json").lower()
    if context_format not in {"json", "toon"}:
        context_format = "json"

    sandbox_root = Path(_read_str(source, "SANDBOX_ROOT", "./sandbox")).expanduser().resolve()
    data_dir = Path(_read_str(source, "DATA_DIR", "./data")).expanduser().resolve()
    sandbox_root.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    return Config(
        sandbox_root=sandbox_root,
        data_dir=data_dir,
        openrouter_api_key=_read_str(source, "OPENROUTER_API_KEY", ""),
        openrouter_model=_read_str(source, "OPENROUTER_MODEL", "xiaomi/mimo-v2-flash:free"),
        openrouter_base_url=_read_str(source, "OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
        openrouter_timeout_sec=_read_int(source, "OPENROUTER_TIMEOUT_SEC", 120),
        hf_token=hf_token,
        embedding_backend=backend if backend in {"huggingface", "hashing"} else "hashing",
        embedding_model=_read_str(source, "EMBEDDING_MODEL", "Qwen/Qwen3-Embedding-8B"),
        embedding_url=_read_str(source, "EMBEDDING_URL", "https://router.huggingface.co/nebius/v1/embeddings"),
        context_recent_actions=_read_int(source, "CONTEXT_RECENT_ACTIONS", 10),
        context_recent_messages=_read_int(source, "CONTEXT_RECENT_MESSAGES", 10),
        context_format=context_format,
        semantic_search_limit=_read_int(source, "SEMANTIC_SEARCH_LIMIT", 5),
        delete_retry_delay_ms=_read_int(source, "DELETE_RETRY_DELAY_MS", 500, minimum=0),
        index_max_file_bytes=_read_int(source, "INDEX_MAX_FILE_BYTES", 120000),
        enable_web_search=web_search_tool_enabled(source),
        host=_read_str(source, "HOST", "0.0.0.0"),
        port=_read_int(source, "PORT", 3000),
        log_level=_read_str(source, "LOG_LEVEL", "INFO").upper(),
    )
