"""
Pipeline Definition Loading

Reads a pipeline definition (ordered stages plus a cleanup stage) from YAML.

Examples:
    >>> config = load_pipeline_config(Path("configs/update_image.yaml"))
    >>> [stage.name for stage in config.stages]
    ['build', 'render', 'convert']

File layout:

    working_dir: .
    stages:
      - name: render
        command: [target/release/toytracer]
        stdout: result/current.ppm
    cleanup:
      name: cleanup
      command: [rm, result/current.ppm]
"""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from omegaconf import OmegaConf
from omegaconf.errors import OmegaConfBaseException

from imagepipe.contexts.orchestration.exceptions import PipelineConfigError
from imagepipe.contexts.orchestration.stages import Stage

load_dotenv()

STAGE_KEYS = {"name", "command", "stdout"}
TOP_LEVEL_KEYS = {"working_dir", "stages", "cleanup"}


@dataclass
class PipelineConfig:
    """
    A runnable pipeline definition.

    Attributes:
        stages: Main stages in execution order
        cleanup: Stage run after every main stage succeeded (None for no cleanup)
        working_dir: Working directory for every stage (None for the current directory)
        source_path: File the definition was loaded from (None for built-in definitions)
    """

    stages: List[Stage] = field(default_factory=list)
    cleanup: Optional[Stage] = None
    working_dir: Optional[Path] = None
    source_path: Optional[Path] = None


def config_path_from_env() -> Optional[Path]:
    """Pipeline definition named by PIPELINE_CONFIG, or None when unset."""
    value = os.getenv("PIPELINE_CONFIG")
    return Path(value) if value else None


def _parse_command(value: Any, location: str, config_path: Optional[Path]) -> List[str]:
    if isinstance(value, str):
        command = shlex.split(value)
    elif isinstance(value, list):
        if not all(isinstance(item, (str, int, float)) for item in value):
            raise PipelineConfigError(
                "Command items must be strings", config_path, f"{location}.command"
            )
        command = [str(item) for item in value]
    else:
        raise PipelineConfigError(
            "Command must be a list of strings or a command string",
            config_path,
            f"{location}.command",
        )

    if not command or not command[0]:
        raise PipelineConfigError("Command must not be empty", config_path, f"{location}.command")
    return command


def parse_stage(
    data: Dict[str, Any], location: str, config_path: Optional[Path] = None
) -> Stage:
    """
    Build a Stage from its mapping form.

    Args:
        data: Mapping with 'command' and optional 'name' and 'stdout'
        location: Dotted position used in error messages (e.g., 'stages.0')
        config_path: Source file used in error messages

    Raises:
        PipelineConfigError: If the mapping is malformed
    """
    if not isinstance(data, dict):
        raise PipelineConfigError("Stage must be a mapping", config_path, location)

    unknown = set(data) - STAGE_KEYS
    if unknown:
        raise PipelineConfigError(
            f"Unknown stage keys: {sorted(unknown)}. Allowed: {sorted(STAGE_KEYS)}",
            config_path,
            location,
        )

    if "command" not in data:
        raise PipelineConfigError("Stage is missing 'command'", config_path, location)

    command = _parse_command(data["command"], location, config_path)

    name = data.get("name") or Path(command[0]).name
    stdout = data.get("stdout")
    if stdout is not None and (not isinstance(stdout, str) or not stdout.strip()):
        raise PipelineConfigError(
            "'stdout' must be a non-empty path string", config_path, f"{location}.stdout"
        )

    return Stage(
        name=str(name),
        executable=command[0],
        args=tuple(command[1:]),
        stdout_path=Path(stdout) if stdout else None,
    )


def parse_pipeline_config(
    data: Dict[str, Any], config_path: Optional[Path] = None
) -> PipelineConfig:
    """
    Build a PipelineConfig from its mapping form.

    A relative working_dir is resolved against the config file's directory and
    made absolute.

    Raises:
        PipelineConfigError: If the mapping is malformed
    """
    if not isinstance(data, dict):
        raise PipelineConfigError("Pipeline definition must be a mapping", config_path)

    unknown = set(data) - TOP_LEVEL_KEYS
    if unknown:
        raise PipelineConfigError(
            f"Unknown keys: {sorted(unknown)}. Allowed: {sorted(TOP_LEVEL_KEYS)}", config_path
        )

    raw_stages = data.get("stages")
    if raw_stages is None:
        raw_stages = []
    if not isinstance(raw_stages, list):
        raise PipelineConfigError("'stages' must be a list", config_path, "stages")

    stages = [
        parse_stage(stage_data, f"stages.{index}", config_path)
        for index, stage_data in enumerate(raw_stages)
    ]

    names = [stage.name for stage in stages]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise PipelineConfigError(f"Duplicate stage names: {duplicates}", config_path, "stages")

    cleanup = None
    if data.get("cleanup") is not None:
        cleanup = parse_stage(data["cleanup"], "cleanup", config_path)

    working_dir = data.get("working_dir")
    if working_dir is not None:
        working_dir = Path(str(working_dir))
        if not working_dir.is_absolute() and config_path is not None:
            working_dir = (Path(config_path).parent / working_dir).resolve()

    return PipelineConfig(
        stages=stages, cleanup=cleanup, working_dir=working_dir, source_path=config_path
    )


def load_pipeline_config(config_path: Path) -> PipelineConfig:
    """
    Load a pipeline definition from a YAML file.

    Args:
        config_path: Path to the YAML definition

    Returns:
        PipelineConfig with source_path set

    Raises:
        PipelineConfigError: If the file is missing, unreadable, or malformed
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise PipelineConfigError("Pipeline config not found", config_path)

    try:
        data = OmegaConf.to_container(OmegaConf.load(config_path), resolve=True)
    except (OmegaConfBaseException, yaml.YAMLError) as e:
        raise PipelineConfigError(f"Could not read pipeline config: {e}", config_path) from e

    return parse_pipeline_config(data, config_path)
