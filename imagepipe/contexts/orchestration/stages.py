"""
Stage and result data structures.

A stage is one external command: an executable, its arguments, and optionally a
file that receives the command's standard output.
"""

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

# Exit codes reported when a stage never started (shell conventions)
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126

# Children killed by signal N are reported as 128 + N
SIGNAL_EXIT_BASE = 128


@dataclass(frozen=True)
class Stage:
    """
    One step of the pipeline.

    Attributes:
        name: Stage label used in logs and events (e.g., "render")
        executable: Program to run, looked up on PATH unless it contains a path separator
        args: Arguments passed to the executable
        stdout_path: File that receives the command's stdout (None to inherit)
    """

    name: str
    executable: str
    args: Tuple[str, ...] = ()
    stdout_path: Optional[Path] = None

    def __post_init__(self):
        # args may arrive as a list; stored as a tuple of str
        object.__setattr__(self, "args", tuple(str(arg) for arg in self.args))
        if self.stdout_path is not None:
            object.__setattr__(self, "stdout_path", Path(self.stdout_path))

    @property
    def argv(self) -> List[str]:
        return [self.executable, *self.args]

    def display(self) -> str:
        """Shell-style rendering of the stage, e.g. "toytracer > result/current.ppm"."""
        command = shlex.join(self.argv)
        if self.stdout_path is not None:
            command += f" > {shlex.quote(str(self.stdout_path))}"
        return command


@dataclass
class StageResult:
    """
    Outcome of running a single stage.

    Attributes:
        stage: The stage that ran
        exit_code: Process exit code, 126/127 for spawn failures, 128+N for signal N
        elapsed_s: Wall-clock time spent on the stage
        spawn_error: Description of why the process could not start (None if it started)
    """

    stage: Stage
    exit_code: int
    elapsed_s: float = 0.0
    spawn_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def spawned(self) -> bool:
        return self.spawn_error is None


@dataclass
class PipelineResult:
    """
    Outcome of a pipeline run.

    Attributes:
        exit_code: Exit code of the first failing stage, else of cleanup, else 0
        stage_results: Results of the main stages that ran, in order
        cleanup_result: Result of the cleanup stage (None if it did not run)
        failed_stage: Main stage that stopped the pipeline (None if all succeeded)
        log_dir: Directory holding pipeline.log (set by execute_pipeline only)
    """

    exit_code: int
    stage_results: List[StageResult] = field(default_factory=list)
    cleanup_result: Optional[StageResult] = None
    failed_stage: Optional[Stage] = None
    log_dir: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def executed(self) -> List[str]:
        """Names of every stage that ran, cleanup included."""
        names = [result.stage.name for result in self.stage_results]
        if self.cleanup_result is not None:
            names.append(self.cleanup_result.stage.name)
        return names

    @property
    def elapsed_s(self) -> float:
        results = list(self.stage_results)
        if self.cleanup_result is not None:
            results.append(self.cleanup_result)
        return sum(result.elapsed_s for result in results)
