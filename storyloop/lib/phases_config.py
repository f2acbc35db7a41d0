"""
Phase command configuration.

Loads phases.yaml to determine which command runs each story phase. The
store itself never interprets these commands; they are only used by
CommandExecutor, the bundled executor for the progression engine.

Example phases.yaml:

    phases:
      1: "agent run --phase {phase} --story {story_id} {document}"
      7: "agent run --phase {phase} --tools {capabilities} {document}"
    default: "agent run --phase {phase} {document}"

Template variables:
- {feature}: document identity
- {document}: absolute path of the document file
- {story_id}, {title}: the story being progressed
- {phase}, {phase_name}: phase number and its name
- {capabilities}: comma-separated capability ids for this phase
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from storyloop.lib.constants import PHASES

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "phases.yaml"

_VAR_RE = re.compile(r'\{(\w+)\}')


@dataclass
class PhasesConfig:
    """Phase command configuration from phases.yaml."""
    commands: dict[int, str] = field(default_factory=dict)
    default: str | None = None  # Used for phases without their own command

    def template_for(self, phase: int) -> str | None:
        return self.commands.get(phase, self.default)


def _parse_phase_key(key) -> int | None:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        phase = key
    elif isinstance(key, str) and key.strip().isdigit():
        phase = int(key.strip())
    else:
        return None
    return phase if phase in PHASES else None


def load_phases_config(project_dir: Optional[Path]) -> PhasesConfig:
    """Load phases.yaml and return PhasesConfig.

    If project_dir is None or the file doesn't exist, returns an empty
    config. Entries for unknown phases are ignored with a warning.
    """
    if project_dir is None:
        return PhasesConfig()

    config_path = project_dir / CONFIG_FILE_NAME
    if not config_path.exists():
        return PhasesConfig()

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return PhasesConfig()

    if not isinstance(data, dict):
        logger.warning(f"Ignoring {config_path}: expected a mapping at top level")
        return PhasesConfig()

    commands = {}
    for key, template in (data.get("phases") or {}).items():
        phase = _parse_phase_key(key)
        if phase is None:
            logger.warning(f"{config_path}: ignoring command for unknown phase {key!r}")
            continue
        if not isinstance(template, str) or not template.strip():
            logger.warning(f"{config_path}: ignoring empty command for phase {phase}")
            continue
        commands[phase] = template

    default = data.get("default")
    if default is not None and not isinstance(default, str):
        logger.warning(f"{config_path}: ignoring non-string default command")
        default = None

    return PhasesConfig(commands=commands, default=default)


def get_phase_command(config: PhasesConfig, phase: int, context: dict[str, str]) -> list[str]:
    """Build the command list for a phase with variable substitution.

    The template is split with shell rules before substitution, so values
    containing spaces or quotes always stay a single argument.

    Raises:
        ValueError: If no command is configured for the phase or a template
            variable is missing from context.
    """
    template = config.template_for(phase)
    if not template:
        raise ValueError(f"No command configured for phase {phase}")

    cmd = []
    for part in shlex.split(template):
        missing = [v for v in _VAR_RE.findall(part) if v not in context]
        if missing:
            raise ValueError(f"Phase {phase} command uses unknown variables: {missing}")
        cmd.append(_VAR_RE.sub(lambda m: str(context[m.group(1)]), part))
    return cmd
