"""
Orchestration context logger.

Provides logging interface for the orchestration context with automatic [pipeline] prefix.
All orchestration modules should import from this module, not from utils.logger directly.
"""

from pathlib import Path
from typing import Optional

from loguru import logger

from imagepipe.utils.logger import setup_logger as _setup_logger

CONTEXT_PREFIX = "[pipeline]"


def setup_pipeline_logger(
    log_dir: Path, config_path: Optional[Path] = None, verbose: bool = False
) -> Path:
    """
    Setup logger for the orchestration context.

    Args:
        log_dir: Directory for this pipeline run
        config_path: Pipeline definition being run (None for the built-in pipeline)
        verbose: Show DEBUG messages on the console

    Returns:
        Path to log file
    """
    return _setup_logger(
        context_name="pipeline",
        log_dir=log_dir,
        extra_provenance={"Pipeline config": config_path or "built-in default"},
        console_level="DEBUG" if verbose else "INFO",
    )


# Wrapper functions with automatic [pipeline] prefix


def _log_info(message: str) -> None:
    """Log info message with [pipeline] prefix."""
    logger.info(f"{CONTEXT_PREFIX} {message}")


def _log_success(message: str) -> None:
    """Log success message with [pipeline] prefix."""
    logger.success(f"{CONTEXT_PREFIX} {message}")


def _log_error(message: str) -> None:
    """Log error message with [pipeline] prefix."""
    logger.error(f"{CONTEXT_PREFIX} {message}")


def _log_warning(message: str) -> None:
    """Log warning message with [pipeline] prefix."""
    logger.warning(f"{CONTEXT_PREFIX} {message}")


def _log_debug(message: str) -> None:
    """Log debug message with [pipeline] prefix."""
    logger.debug(f"{CONTEXT_PREFIX} {message}")


# High-level pipeline-specific logging helpers


def log_run_start(run_id: str, stages, cleanup, working_dir: Optional[Path]) -> None:
    """Log the planned stage order before anything runs."""
    _log_info(f"Starting pipeline run: {run_id}")
    _log_info(f"Working directory: {working_dir or Path.cwd()}")
    for index, stage in enumerate(stages, 1):
        _log_debug(f"  Stage {index}: {stage.name}: {stage.display()}")
    if cleanup is not None:
        _log_debug(f"  Cleanup: {cleanup.name}: {cleanup.display()}")


def log_stage_start(stage) -> None:
    _log_info(f"Running stage '{stage.name}': {stage.display()}")


def log_stage_result(result, is_cleanup: bool = False) -> None:
    """
    Log the outcome of one stage.

    Spawn failures and non-zero exits are logged with the stage name so they can
    be matched with the tool's own diagnostics printed just above.
    """
    name = result.stage.name
    if result.success:
        _log_success(f"Stage '{name}' succeeded ({result.elapsed_s:.2f}s)")
    elif not result.spawned:
        _log_error(
            f"Stage '{name}' could not be started: {result.spawn_error} "
            f"(exit code {result.exit_code})"
        )
    elif is_cleanup:
        _log_error(f"Cleanup stage '{name}' failed: exit code {result.exit_code}")
        _log_warning("Final artifacts produced by earlier stages remain valid.")
    else:
        _log_error(f"Stage '{name}' failed: exit code {result.exit_code}")


def log_run_result(run_id: str, result) -> None:
    """Log the overall outcome of a pipeline run."""
    if result.success:
        _log_success(f"Pipeline {run_id} completed ({result.elapsed_s:.2f}s)")
        return

    _log_error(f"Pipeline {run_id} failed with exit code {result.exit_code}")
    if result.failed_stage is not None:
        _log_error(f"  Stopped at stage '{result.failed_stage.name}'; later stages were skipped")
        stdout_path = _intermediate_path(result)
        if stdout_path is not None:
            _log_info(f"  Intermediate output kept for inspection: {stdout_path}")


def _intermediate_path(result) -> Optional[Path]:
    """Most recent redirect target written before the failure, if any."""
    for stage_result in reversed(result.stage_results):
        if stage_result.success and stage_result.stage.stdout_path is not None:
            return stage_result.stage.stdout_path
    return None
