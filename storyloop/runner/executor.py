"""
Phase executor boundary.

The progression engine hands one phase of one story at a time to an
executor and only looks at whether it succeeded. CommandExecutor is the
bundled implementation: it runs the command configured for the phase in
phases.yaml.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from storyloop.lib.constants import PHASE_NAMES
from storyloop.lib.phases_config import PhasesConfig, get_phase_command
from storyloop.pm.models import Story

logger = logging.getLogger(__name__)


@dataclass
class PhaseRequest:
    """One phase of one story, as handed to an executor."""
    document_path: Path
    feature: str
    story: Story
    phase: int

    @property
    def phase_name(self) -> str:
        return PHASE_NAMES[self.phase]

    @property
    def capabilities(self) -> list[str]:
        return self.story.capabilities_for(self.phase)

    def template_context(self) -> dict[str, str]:
        return {
            "feature": self.feature,
            "document": str(self.document_path.resolve()),
            "story_id": self.story.id,
            "title": self.story.title,
            "phase": str(self.phase),
            "phase_name": self.phase_name,
            "capabilities": ",".join(self.capabilities),
        }


@dataclass
class PhaseOutcome:
    success: bool
    message: str = ""
    output: Optional[dict] = None  # Structured output, if the executor produced any


class PhaseExecutor(Protocol):
    def run_phase(self, request: PhaseRequest) -> PhaseOutcome:
        ...


class CommandExecutor:
    """Runs each phase as a subprocess built from phases.yaml."""

    def __init__(self, config: PhasesConfig, cwd: Path, timeout: int, log_dir: Path | None = None):
        self.config = config
        self.cwd = cwd
        self.timeout = timeout
        self.log_dir = log_dir

    def run_phase(self, request: PhaseRequest) -> PhaseOutcome:
        """
        Run the configured command for a phase.

        Exit code 0 is success. If stdout is a JSON object it becomes the
        outcome's structured output.
        """
        try:
            cmd = get_phase_command(self.config, request.phase, request.template_context())
        except ValueError as e:
            return PhaseOutcome(success=False, message=str(e))

        logger.info(f"[EXEC] {request.story.id} phase {request.phase} ({request.phase_name}): {cmd[0]}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.cwd),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return PhaseOutcome(
                success=False,
                message=f"Timed out after {self.timeout}s. Retry or increase PHASE_TIMEOUT.",
            )
        except FileNotFoundError:
            return PhaseOutcome(success=False, message=f"Command not found: {cmd[0]}")

        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_file = self.log_dir / f"{request.feature}-{request.story.id}-phase{request.phase}.log"
            log_file.write_text(
                f"=== COMMAND ===\n{' '.join(cmd)}\n\n"
                f"=== EXIT CODE ===\n{result.returncode}\n\n"
                f"=== STDOUT ===\n{result.stdout}\n\n"
                f"=== STDERR ===\n{result.stderr}\n"
            )

        output = _parse_output(result.stdout)
        if result.returncode != 0:
            detail = result.stderr.strip().splitlines()[-1:] or [f"exit code {result.returncode}"]
            return PhaseOutcome(success=False, message=detail[0], output=output)
        return PhaseOutcome(success=True, output=output)


def _parse_output(stdout: str) -> Optional[dict]:
    try:
        data = json.loads(stdout.strip())
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
