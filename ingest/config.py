"""Configuration for the session ingestion lane.

Precedence (lowest first): built-in defaults, YAML config file, environment
variables, CLI flags (applied by the caller via :meth:`IngestConfig.with_overrides`).

Environment:
    GRAPHITI_INGEST_CONFIG       path to the YAML config file
    GRAPHITI_URL                 Graphiti HTTP base URL (sink)
    GRAPHITI_INGEST_SOURCE_DIRS  archive directories, ``os.pathsep``-separated
    GRAPHITI_INGEST_STATE_PATH   checkpoint file
    GRAPHITI_INGEST_STATS_PATH   final run summary JSON
"""

from __future__ import annotations

import logging
import os
import urllib.parse
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ingest.errors import ConfigError

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_REL = Path('config/session_ingest.yaml')
DEFAULT_SINK_URL = 'http://localhost:18000'
DEFAULT_SOURCE_DIRS = ('~/.openclaw/agents/main/sessions',)
DEFAULT_STATE_PATH = REPO_ROOT / 'state' / 'session_ingest_state.json'
DEFAULT_STATS_PATH = REPO_ROOT / 'state' / 'session_ingest_stats.json'

_ENV_OVERRIDES = {
    'GRAPHITI_URL': 'sink_url',
    'GRAPHITI_INGEST_STATE_PATH': 'state_path',
    'GRAPHITI_INGEST_STATS_PATH': 'stats_path',
}


def validate_sink_url(url: str) -> str:
    """Return the normalized sink base URL or raise ValueError.

    The sink must be an absolute http(s) URL without embedded credentials,
    query string or fragment.
    """
    base = (url or '').strip()
    parsed = urllib.parse.urlparse(base)
    if parsed.scheme not in {'http', 'https'} or not parsed.netloc or not parsed.hostname:
        raise ValueError(f'sink URL must be an absolute http(s) URL, got {base!r}')
    if parsed.username or parsed.password:
        raise ValueError('sink URL must not include credentials')
    if parsed.query:
        raise ValueError('sink URL must not include a query string')
    if parsed.fragment:
        raise ValueError('sink URL must not include a fragment')
    return base.rstrip('/')


class IngestConfig(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)

    sink_url: str = DEFAULT_SINK_URL
    source_dirs: tuple[Path, ...] = tuple(Path(d) for d in DEFAULT_SOURCE_DIRS)
    file_pattern: str = '*.jsonl'
    state_path: Path = DEFAULT_STATE_PATH
    stats_path: Path = DEFAULT_STATS_PATH
    legacy_state_paths: tuple[Path, ...] = ()

    # Submission
    batch_size: int = Field(default=5, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    request_timeout_s: float = Field(default=30.0, gt=0)

    # Rate governor
    initial_delay_ms: int = Field(default=1500, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    backoff_factor: float = Field(default=1.5, gt=1.0)

    # Extraction
    min_messages: int = Field(default=3, ge=0)
    min_content_chars: int = Field(default=20, ge=0)
    max_content_chars: int = Field(default=3000, ge=1)
    synthetic_markers: tuple[str, ...] = ('[cron:',)
    display_names: dict[str, str] = Field(
        default_factory=lambda: {'user': 'User', 'assistant': 'Assistant'}
    )
    group_id_prefix: str = 'sessions-dm'

    # Reporting / capture
    progress_every: int = Field(default=100, ge=1)
    capture_recent_minutes: int = Field(default=30, ge=0)

    @field_validator('sink_url')
    @classmethod
    def _check_sink_url(cls, value: str) -> str:
        return validate_sink_url(value)

    @field_validator('source_dirs', 'legacy_state_paths', mode='before')
    @classmethod
    def _split_paths(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part for part in value.split(os.pathsep) if part.strip())
        return value

    @field_validator('source_dirs', 'legacy_state_paths')
    @classmethod
    def _expand_paths(cls, value: tuple[Path, ...]) -> tuple[Path, ...]:
        return tuple(p.expanduser() for p in value)

    @field_validator('state_path', 'stats_path')
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator('synthetic_markers')
    @classmethod
    def _non_empty_markers(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(m for m in value if m)

    @model_validator(mode='after')
    def _check_bounds(self) -> IngestConfig:
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError(
                f'max_delay_ms ({self.max_delay_ms}) must be >= initial_delay_ms ({self.initial_delay_ms})'
            )
        if self.max_content_chars <= self.min_content_chars:
            raise ValueError('max_content_chars must be greater than min_content_chars')
        return self

    def with_overrides(self, **overrides: Any) -> IngestConfig:
        """Return a validated copy with every non-None override applied.

        An initial delay above the configured ceiling lifts the ceiling with it.
        """
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        data = {**self.model_dump(), **updates}
        if 'initial_delay_ms' in updates and 'max_delay_ms' not in updates:
            data['max_delay_ms'] = max(data['max_delay_ms'], updates['initial_delay_ms'])
        return _build_config(data, source='overrides')


def _build_config(data: dict[str, Any], *, source: str) -> IngestConfig:
    try:
        return IngestConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f'invalid ingest config ({source}): {exc}') from exc


def _anchor_paths(raw: dict[str, Any]) -> dict[str, Any]:
    """Relative state/stats paths in the config file are relative to the repo root."""
    out = dict(raw)
    for key in ('state_path', 'stats_path'):
        value = out.get(key)
        if isinstance(value, str) and value.strip():
            path = Path(value).expanduser()
            out[key] = path if path.is_absolute() else REPO_ROOT / path
    return out


def resolve_config_path(config_arg: str | None) -> Path:
    raw = (config_arg or os.environ.get('GRAPHITI_INGEST_CONFIG') or '').strip()
    if raw:
        cli_path = Path(raw).expanduser()
        if cli_path.is_absolute():
            return cli_path
        cwd_resolved = Path.cwd() / cli_path
        if cwd_resolved.exists():
            return cwd_resolved
        return REPO_ROOT / cli_path
    return REPO_ROOT / DEFAULT_CONFIG_REL


def load_config(config_arg: str | None = None) -> IngestConfig:
    """Load defaults + YAML + environment into an :class:`IngestConfig`.

    An explicitly requested config file that does not exist is a ``ConfigError``;
    a missing default config file just means built-in defaults.
    """
    explicit = bool((config_arg or os.environ.get('GRAPHITI_INGEST_CONFIG') or '').strip())
    path = resolve_config_path(config_arg)

    data: dict[str, Any] = {}
    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text(encoding='utf-8')) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f'cannot read config {path}: {exc}') from exc
        if not isinstance(raw, dict):
            raise ConfigError(f'invalid config shape: {path}')
        data.update(_anchor_paths(raw))
        logger.debug('Loaded ingest config from %s', path)
    elif explicit:
        raise ConfigError(f'missing config: {path}')

    for env_name, field_name in _ENV_OVERRIDES.items():
        value = (os.environ.get(env_name) or '').strip()
        if value:
            data[field_name] = value
    env_dirs = (os.environ.get('GRAPHITI_INGEST_SOURCE_DIRS') or '').strip()
    if env_dirs:
        data['source_dirs'] = env_dirs

    return _build_config(data, source=str(path))
