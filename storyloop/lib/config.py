"""
Configuration loader for the story store.

Reads storyloop.env from a project directory. Every key is optional; a
missing file yields the defaults.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from . import envparse
from .constants import DEFAULT_DOC_GLOB, DEFAULT_VERIFICATION_GATE, VERIFICATION_GATE_PATTERN

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "storyloop.env"

DEFAULT_DOCS_DIR = "docs"
DEFAULT_STALE_AFTER = 1800.0
DEFAULT_BACKUP_KEEP = 5
DEFAULT_PHASE_TIMEOUT = 600


@dataclass
class StoreConfig:
    """Store-level configuration from storyloop.env"""
    docs_dir: Path
    doc_glob: str = DEFAULT_DOC_GLOB
    stale_after: float = DEFAULT_STALE_AFTER  # Seconds before a lock may be reclaimed
    backup_keep: int = DEFAULT_BACKUP_KEEP  # Backups retained per document after a commit
    phase_timeout: int = DEFAULT_PHASE_TIMEOUT  # Seconds, passed to CommandExecutor
    verification_gate: str = DEFAULT_VERIFICATION_GATE


def _positive_number(env: dict, key: str, default, cast):
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Invalid {key} '{raw}', using default {default}")
        return default
    if value <= 0:
        logger.warning(f"{key} must be positive, got '{raw}'; using default {default}")
        return default
    return value


def load_store_config(project_dir: Path) -> StoreConfig:
    """Load storyloop.env and return StoreConfig.

    Relative DOCS_DIR values are resolved against project_dir.
    """
    config_path = project_dir / CONFIG_FILE_NAME
    env = envparse.load_env(config_path) if config_path.exists() else {}

    docs_dir = Path(env.get("DOCS_DIR") or DEFAULT_DOCS_DIR)
    if not docs_dir.is_absolute():
        docs_dir = project_dir / docs_dir

    # The gate text must itself be recognizable as a gate, or repair would
    # append it on every pass.
    gate = env.get("VERIFICATION_GATE") or DEFAULT_VERIFICATION_GATE
    if not VERIFICATION_GATE_PATTERN.search(gate):
        logger.warning(
            f"VERIFICATION_GATE '{gate}' does not mention typecheck or build; "
            f"using default '{DEFAULT_VERIFICATION_GATE}'"
        )
        gate = DEFAULT_VERIFICATION_GATE

    return StoreConfig(
        docs_dir=docs_dir,
        doc_glob=env.get("DOC_GLOB") or DEFAULT_DOC_GLOB,
        stale_after=_positive_number(env, "STALE_AFTER", DEFAULT_STALE_AFTER, float),
        backup_keep=_positive_number(env, "BACKUP_KEEP", DEFAULT_BACKUP_KEEP, int),
        phase_timeout=_positive_number(env, "PHASE_TIMEOUT", DEFAULT_PHASE_TIMEOUT, int),
        verification_gate=gate,
    )
