"""
Orchestration Context

Responsibilities:
- Defines pipeline stages (command, arguments, optional stdout redirect)
- Runs stages in order as child processes, stopping at the first failure
- Runs the cleanup stage only after every main stage succeeded
- Loads pipeline definitions from YAML

Owns: stage execution order, exit status propagation, run logging
Never: Inspects or validates the artifacts a stage produces
"""

from imagepipe.contexts.orchestration.config import PipelineConfig, load_pipeline_config
from imagepipe.contexts.orchestration.runner import execute_pipeline, run_pipeline, run_stage
from imagepipe.contexts.orchestration.stages import PipelineResult, Stage, StageResult

__all__ = [
    "PipelineConfig",
    "PipelineResult",
    "Stage",
    "StageResult",
    "execute_pipeline",
    "load_pipeline_config",
    "run_pipeline",
    "run_stage",
]
