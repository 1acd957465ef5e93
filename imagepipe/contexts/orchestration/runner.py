"""
Pipeline Execution Module

Runs stages as child processes, one at a time, stopping at the first stage that
fails. The cleanup stage runs only when every main stage succeeded.
"""

import os
import signal
import subprocess
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from imagepipe.contexts.orchestration.logger import (
    _log_debug,
    log_run_result,
    log_run_start,
    log_stage_result,
    log_stage_start,
    setup_pipeline_logger,
)
from imagepipe.contexts.orchestration.stages import (
    EXIT_NOT_EXECUTABLE,
    EXIT_NOT_FOUND,
    SIGNAL_EXIT_BASE,
    PipelineResult,
    Stage,
    StageResult,
)
from imagepipe.utils.event_logging import log_pipeline_event
from imagepipe.utils.timestamp import now

load_dotenv()

LOGS_PATH = Path(os.getenv("LOGS_PATH", "outs/logs"))

# Termination requests sent to the orchestrator are passed on to the running child
FORWARDED_SIGNALS = [signal.SIGINT, signal.SIGTERM]


class _SignalForwarder:
    """
    Signal handler that passes SIGINT/SIGTERM on to the running child.

    Signals that arrive before the child exists are held and delivered on attach().
    """

    def __init__(self):
        self.process: Optional[subprocess.Popen] = None
        self.pending = []

    def __call__(self, signum, frame):
        if self.process is None:
            self.pending.append(signum)
        else:
            self.process.send_signal(signum)

    def attach(self, process: subprocess.Popen) -> None:
        self.process = process
        for signum in self.pending:
            process.send_signal(signum)
        self.pending.clear()


@contextmanager
def _forward_signals():
    """
    Install a _SignalForwarder for SIGINT/SIGTERM while the block runs.

    The child decides how to exit; its exit status is reported as usual. Signals
    still held when the block ends (the child never started) are re-raised in
    this process once the previous handlers are back.
    Handlers can only be installed from the main thread, elsewhere this is a no-op.
    """
    forwarder = _SignalForwarder()
    if threading.current_thread() is not threading.main_thread():
        yield forwarder
        return

    previous = {signum: signal.signal(signum, forwarder) for signum in FORWARDED_SIGNALS}
    try:
        yield forwarder
    finally:
        for signum, handler in previous.items():
            # None means the previous handler was not installed from Python
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        for signum in forwarder.pending:
            signal.raise_signal(signum)


def _resolve(path: Path, working_dir: Optional[Path]) -> Path:
    if working_dir is None or path.is_absolute():
        return path
    return working_dir / path


def _resolve_executable(executable: str, working_dir: Optional[Path]) -> str:
    """Anchor relative paths like 'target/release/toytracer' to working_dir; bare names use PATH."""
    if os.sep not in executable and (os.altsep is None or os.altsep not in executable):
        return executable
    return str(_resolve(Path(executable), working_dir))


def _exit_code(returncode: int) -> int:
    # Negative return codes mean the child was killed by a signal
    if returncode < 0:
        return SIGNAL_EXIT_BASE - returncode
    return returncode


def run_stage(stage: Stage, working_dir: Optional[Path] = None) -> StageResult:
    """
    Run one stage as a child process and wait for it to exit.

    The child inherits stderr (and stdout unless the stage redirects it), so the
    tool's own diagnostics reach the user unmodified.

    Args:
        stage: Stage to run
        working_dir: Child working directory, also the base for relative paths

    Returns:
        StageResult. exit_code is 127 if the executable was not found and 126 if
        it (or the stdout target) could not be opened; 128+N if killed by signal N.
    """
    # Absolute, so relative executables are not joined with cwd a second time by Popen
    working_dir = Path(working_dir).resolve() if working_dir is not None else None
    argv = [_resolve_executable(stage.executable, working_dir), *stage.args]

    start_time = time.time()
    with _forward_signals() as forwarder:
        stdout_file = None
        try:
            if stage.stdout_path is not None:
                stdout_path = _resolve(stage.stdout_path, working_dir)
                stdout_path.parent.mkdir(parents=True, exist_ok=True)
                stdout_file = open(stdout_path, "wb")

            process = subprocess.Popen(argv, cwd=working_dir, stdout=stdout_file)
        except FileNotFoundError as e:
            return StageResult(stage, EXIT_NOT_FOUND, time.time() - start_time, spawn_error=str(e))
        except OSError as e:
            # PermissionError, exec format errors, unwritable stdout target
            return StageResult(
                stage, EXIT_NOT_EXECUTABLE, time.time() - start_time, spawn_error=str(e)
            )
        finally:
            # The child holds its own descriptor once spawned
            if stdout_file is not None:
                stdout_file.close()

        forwarder.attach(process)
        returncode = process.wait()

    return StageResult(stage, _exit_code(returncode), time.time() - start_time)


def run_pipeline(
    stages: Sequence[Stage],
    cleanup: Optional[Stage] = None,
    working_dir: Optional[Path] = None,
) -> PipelineResult:
    """
    Run stages in order, stopping at the first failure.

    Pure execution function - no log files or event records are written here
    beyond per-stage log messages. Use execute_pipeline() for a fully logged run.

    Args:
        stages: Main stages, in execution order
        cleanup: Stage run only if every main stage succeeded (None to skip)
        working_dir: Child working directory for every stage

    Returns:
        PipelineResult whose exit_code is the first failing stage's exit code,
        else cleanup's exit code, else 0
    """
    results = []

    for stage in stages:
        log_stage_start(stage)
        result = run_stage(stage, working_dir)
        log_stage_result(result)
        results.append(result)

        if not result.success:
            return PipelineResult(
                exit_code=result.exit_code, stage_results=results, failed_stage=stage
            )

    if cleanup is None:
        return PipelineResult(exit_code=0, stage_results=results)

    log_stage_start(cleanup)
    cleanup_result = run_stage(cleanup, working_dir)
    log_stage_result(cleanup_result, is_cleanup=True)

    return PipelineResult(
        exit_code=cleanup_result.exit_code,
        stage_results=results,
        cleanup_result=cleanup_result,
    )


def execute_pipeline(
    config,
    log_dir: Optional[Path] = None,
    verbose: bool = False,
    events_file: Optional[Path] = None,
) -> PipelineResult:
    """
    Run a pipeline definition with full logging.

    Orchestration function that wraps run_pipeline() with a per-run log
    directory (Tier 1 logging) and run events (Tier 2 logging).

    Args:
        config: PipelineConfig to run
        log_dir: Directory for pipeline.log (default: LOGS_PATH/<run_id>)
        verbose: Show DEBUG messages on the console
        events_file: Event log path (default: PIPELINE_EVENTS_FILE env variable)

    Returns:
        PipelineResult with log_dir set
    """
    # Suffix keeps runs started within the same second apart
    run_id = f"run_{now()}_{uuid.uuid4().hex[:6]}"
    if log_dir is None:
        log_dir = LOGS_PATH / run_id
    log_dir = Path(log_dir)

    setup_pipeline_logger(log_dir, config_path=config.source_path, verbose=verbose)
    log_run_start(run_id, config.stages, config.cleanup, config.working_dir)

    log_pipeline_event(
        "run_started",
        run_id,
        source="orchestration",
        events_file=events_file,
        config=str(config.source_path) if config.source_path else None,
        stages=[stage.name for stage in config.stages],
        cleanup=config.cleanup.name if config.cleanup else None,
    )

    result = run_pipeline(config.stages, config.cleanup, config.working_dir)
    result.log_dir = log_dir

    stage_results = list(result.stage_results)
    if result.cleanup_result is not None:
        stage_results.append(result.cleanup_result)

    for stage_result in stage_results:
        log_pipeline_event(
            "stage_completed" if stage_result.success else "stage_failed",
            run_id,
            source="orchestration",
            events_file=events_file,
            stage=stage_result.stage.name,
            exit_code=stage_result.exit_code,
            elapsed_s=round(stage_result.elapsed_s, 2),
            cleanup=stage_result is result.cleanup_result,
            spawn_error=stage_result.spawn_error,
        )

    log_run_result(run_id, result)
    _log_debug(f"Log directory: {log_dir}")

    log_pipeline_event(
        "run_completed",
        run_id,
        source="orchestration",
        events_file=events_file,
        exit_code=result.exit_code,
        success=result.success,
        executed=result.executed,
        elapsed_s=round(result.elapsed_s, 2),
    )

    return result
