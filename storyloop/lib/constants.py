"""Shared constants for the story store."""

import re

# Fixed phase enumeration. Stories may only require phases listed here.
PHASE_NAMES = {
    1: "Foundation",
    2: "Package Manager",
    3: "Feature Structure",
    4: "Modularization",
    5: "Type Safety",
    6: "UI Centralization",
    7: "Data Layer",
    8: "Auth Integration",
    9: "Capability Integration",
    10: "Security & Error Handling",
    11: "Mobile Design",
}
PHASES = tuple(sorted(PHASE_NAMES))

# Collection naming convention
DEFAULT_DOC_GLOB = "prd-*.json"
DOC_PREFIX = "prd-"

# Side-file suffixes
LOCK_SUFFIX = ".lock"
BACKUP_SUFFIX = ".bak"
TMP_SUFFIX = ".tmp"

# Acceptance criterion recognized as a verification gate
VERIFICATION_GATE_PATTERN = re.compile(r'\b(typecheck|type[- ]check|build)', re.IGNORECASE)
DEFAULT_VERIFICATION_GATE = "Typecheck passes"

# Informational status text that claims completion. `passes` is authoritative.
COMPLETED_STATUS_WORDS = frozenset({"completed", "complete", "done", "passed", "passes"})
STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"


def summary_file_name(feature: str) -> str:
    """Default summary artifact name for a feature."""
    return f"summary-{feature}.md"
