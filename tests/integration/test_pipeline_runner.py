"""
Integration tests for pipeline execution - spawns real child processes.

Stages are inline Python programs run with the current interpreter, so no
external build or image tools are needed.
"""

import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from imagepipe.contexts.orchestration import runner
from imagepipe.contexts.orchestration.config import load_pipeline_config
from imagepipe.contexts.orchestration.runner import _SignalForwarder, run_pipeline, run_stage
from imagepipe.contexts.orchestration.stages import (
    EXIT_NOT_EXECUTABLE,
    EXIT_NOT_FOUND,
    Stage,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals and permissions")


@pytest.mark.integration
def test_all_stages_succeed(image_stages):
    """Build, render, convert and cleanup succeed: PPM removed, PNG kept, exit 0."""
    s = image_stages

    result = run_pipeline([s["build"], s["render"], s["convert"]], s["cleanup"])

    assert result.exit_code == 0
    assert result.success
    assert result.executed == ["build", "render", "convert", "cleanup"]
    assert not s["intermediate"].exists()
    assert s["final"].exists()
    assert s["final"].read_text().startswith("P3")


@pytest.mark.integration
def test_build_failure_stops_everything(image_stages, py_stage):
    """Build exits 1: nothing else runs and no files are written."""
    s = image_stages
    build = py_stage("build", "import sys; sys.exit(1)")

    result = run_pipeline([build, s["render"], s["convert"]], s["cleanup"])

    assert result.exit_code == 1
    assert result.executed == ["build"]
    assert result.failed_stage == build
    assert result.cleanup_result is None
    assert not s["intermediate"].exists()
    assert not s["final"].exists()


@pytest.mark.integration
def test_convert_failure_keeps_intermediate(image_stages, py_stage):
    """Convert exits 2: cleanup is skipped and the rendered PPM stays for inspection."""
    s = image_stages
    convert = py_stage("convert", "import sys; sys.exit(2)")

    result = run_pipeline([s["build"], s["render"], convert], s["cleanup"])

    assert result.exit_code == 2
    assert result.executed == ["build", "render", "convert"]
    assert result.cleanup_result is None
    assert s["intermediate"].exists()
    assert s["intermediate"].stat().st_size > 0
    assert not s["final"].exists()


@pytest.mark.integration
def test_cleanup_failure_is_reported(image_stages, py_stage):
    """Cleanup exits 3: overall exit is 3, the converted image is still there."""
    s = image_stages
    cleanup = py_stage("cleanup", "import sys; sys.exit(3)")

    result = run_pipeline([s["build"], s["render"], s["convert"]], cleanup)

    assert result.exit_code == 3
    assert result.failed_stage is None
    assert all(stage_result.success for stage_result in result.stage_results)
    assert result.cleanup_result.exit_code == 3
    assert s["final"].exists()
    assert s["final"].read_text() == s["intermediate"].read_text()


@pytest.mark.integration
@pytest.mark.parametrize("failing_index", [0, 1, 2, 3])
@pytest.mark.parametrize("exit_code", [1, 42])
def test_first_failure_stops_later_stages(recording_stage, executed, failing_index, exit_code):
    """If stage i fails, no stage after it runs and the run exits with its code."""
    names = ["build", "render", "convert", "package"]
    stages = [
        recording_stage(name, exit_code if index == failing_index else 0)
        for index, name in enumerate(names)
    ]

    result = run_pipeline(stages, recording_stage("cleanup"))

    assert result.exit_code == exit_code
    assert executed() == names[: failing_index + 1]
    assert result.failed_stage == stages[failing_index]


@pytest.mark.integration
def test_cleanup_runs_exactly_once(recording_stage, executed):
    stages = [recording_stage("build"), recording_stage("render")]

    result = run_pipeline(stages, recording_stage("cleanup"))

    assert result.exit_code == 0
    assert executed() == ["build", "render", "cleanup"]


@pytest.mark.integration
def test_empty_stage_list_still_runs_cleanup(recording_stage, executed):
    """No main stages means vacuous success, so cleanup runs."""
    result = run_pipeline([], recording_stage("cleanup"))

    assert result.exit_code == 0
    assert executed() == ["cleanup"]


@pytest.mark.integration
def test_empty_stage_list_cleanup_exit_code(recording_stage):
    result = run_pipeline([], recording_stage("cleanup", exit_code=5))
    assert result.exit_code == 5


@pytest.mark.integration
def test_no_cleanup_stage(recording_stage, executed):
    result = run_pipeline([recording_stage("build")], None)

    assert result.exit_code == 0
    assert result.cleanup_result is None
    assert executed() == ["build"]


@pytest.mark.integration
def test_pipeline_is_repeatable(image_stages):
    """Two runs from a clean state give the same image and leave no intermediate file."""
    s = image_stages
    stages = [s["build"], s["render"], s["convert"]]

    first = run_pipeline(stages, s["cleanup"])
    first_image = s["final"].read_bytes()
    assert not s["intermediate"].exists()

    second = run_pipeline(stages, s["cleanup"])

    assert first.exit_code == second.exit_code == 0
    assert s["final"].read_bytes() == first_image
    assert not s["intermediate"].exists()


@pytest.mark.integration
def test_empty_output_is_not_validated(tmp_path, py_stage, recording_stage, executed):
    """A stage that exits 0 without writing anything still counts as success."""
    render = py_stage("render", "pass", stdout_path=tmp_path / "result" / "current.ppm")

    result = run_pipeline([render, recording_stage("convert")], recording_stage("cleanup"))

    assert result.exit_code == 0
    assert (tmp_path / "result" / "current.ppm").read_bytes() == b""
    assert executed() == ["convert", "cleanup"]


@pytest.mark.integration
def test_missing_executable_is_spawn_failure(recording_stage, executed):
    """An executable that cannot be found stops the run with exit code 127."""
    missing = Stage("build", "imagepipe-no-such-tool-xyz", ("build",))

    result = run_pipeline([missing, recording_stage("render")], recording_stage("cleanup"))

    assert result.exit_code == EXIT_NOT_FOUND
    assert result.stage_results[0].spawn_error is not None
    assert not result.stage_results[0].spawned
    assert executed() == []


@posix_only
@pytest.mark.integration
def test_non_executable_file_is_spawn_failure(tmp_path):
    script = tmp_path / "toytracer"
    script.write_text("#!/bin/sh\necho hi\n")
    script.chmod(0o644)

    result = run_stage(Stage("render", str(script)))

    assert result.exit_code == EXIT_NOT_EXECUTABLE
    assert result.spawn_error is not None


@pytest.mark.integration
def test_unwritable_stdout_target_is_spawn_failure(tmp_path, py_stage):
    """A redirect target that cannot be opened (here a directory) stops the stage."""
    target = tmp_path / "result"
    target.mkdir()

    result = run_stage(py_stage("render", "print('P3')", stdout_path=target))

    assert result.exit_code == EXIT_NOT_EXECUTABLE
    assert not result.spawned


@pytest.mark.integration
def test_stdout_redirect_creates_parent_dirs(tmp_path, py_stage):
    target = tmp_path / "nested" / "result" / "current.ppm"

    result = run_stage(py_stage("render", "print('P3')", stdout_path=target))

    assert result.success
    assert target.read_text().strip() == "P3"


@pytest.mark.integration
def test_stdout_redirect_truncates_previous_output(tmp_path, py_stage):
    target = tmp_path / "current.ppm"
    target.write_text("stale image data that is longer than the new output\n")

    run_stage(py_stage("render", "print('P3')", stdout_path=target))

    assert target.read_text() == "P3\n"


@pytest.mark.integration
def test_working_dir_anchors_relative_paths(tmp_path, py_stage):
    """Relative redirects resolve against working_dir, which is also the child's cwd."""
    work = tmp_path / "toytracer"
    work.mkdir()
    render = py_stage("render", "import os; print(os.getcwd())", stdout_path="result/current.ppm")

    result = run_pipeline([render], None, working_dir=work)

    assert result.exit_code == 0
    output = work / "result" / "current.ppm"
    assert os.path.samefile(output.read_text().strip(), work)


@posix_only
@pytest.mark.integration
def test_relative_executable_resolved_against_working_dir(tmp_path):
    work = tmp_path / "toytracer"
    binary = work / "target" / "release" / "toytracer"
    binary.parent.mkdir(parents=True)
    binary.write_text("#!/bin/sh\necho P3\n")
    binary.chmod(0o755)

    result = run_stage(
        Stage("render", "target/release/toytracer", stdout_path="out.ppm"), working_dir=work
    )

    assert result.success
    assert (work / "out.ppm").read_text() == "P3\n"


@posix_only
@pytest.mark.integration
def test_child_killed_by_signal_reports_128_plus_signal(recording_stage, executed, py_stage):
    render = py_stage("render", "import os, signal; os.kill(os.getpid(), signal.SIGTERM)")

    result = run_pipeline([render, recording_stage("convert")], recording_stage("cleanup"))

    assert result.exit_code == 128 + signal.SIGTERM
    assert executed() == []


@posix_only
@pytest.mark.integration
def test_sigterm_forwarded_to_running_stage(tmp_path, py_stage):
    """SIGTERM sent to the orchestrator ends the running child, and handlers are restored."""
    ready = tmp_path / "ready"
    render = py_stage(
        "render",
        "import pathlib, sys, time; pathlib.Path(sys.argv[1]).touch(); time.sleep(30)",
        ready,
    )
    main_thread_id = threading.main_thread().ident

    def send_sigterm_when_ready():
        deadline = time.time() + 10
        while not ready.exists() and time.time() < deadline:
            time.sleep(0.05)
        if ready.exists():
            time.sleep(0.2)
            signal.pthread_kill(main_thread_id, signal.SIGTERM)

    previous_handler = signal.getsignal(signal.SIGTERM)
    sender = threading.Thread(target=send_sigterm_when_ready)
    sender.start()

    start = time.time()
    result = run_stage(render)
    sender.join()

    assert result.exit_code == 128 + signal.SIGTERM
    assert time.time() - start < 20
    assert signal.getsignal(signal.SIGTERM) == previous_handler


def _write_tool(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\necho P3\n")
    path.chmod(0o755)


@posix_only
@pytest.mark.integration
def test_config_loaded_through_relative_path(tmp_path, monkeypatch):
    """A relative config path must not make relative executables resolve twice."""
    toy = tmp_path / "pipelines" / "toy"
    _write_tool(toy / "bin" / "tool")
    (toy / "p.yaml").write_text(
        "working_dir: .\n"
        "stages:\n"
        "  - name: render\n"
        "    command: [bin/tool]\n"
        "    stdout: result/current.ppm\n"
    )
    monkeypatch.chdir(tmp_path)

    config = load_pipeline_config(Path("pipelines/toy/p.yaml"))
    result = run_pipeline(config.stages, config.cleanup, config.working_dir)

    assert result.exit_code == 0, result.stage_results[0].spawn_error
    assert (toy / "result" / "current.ppm").read_text() == "P3\n"


@posix_only
@pytest.mark.integration
def test_relative_working_dir_passed_directly(tmp_path, monkeypatch):
    _write_tool(tmp_path / "toy" / "bin" / "tool")
    monkeypatch.chdir(tmp_path)

    result = run_stage(Stage("render", "bin/tool", stdout_path="out.ppm"), working_dir=Path("toy"))

    assert result.success, result.spawn_error
    assert (tmp_path / "toy" / "out.ppm").read_text() == "P3\n"


@posix_only
@pytest.mark.integration
def test_signal_received_before_spawn_is_delivered_to_child():
    """A signal held before the child exists is sent to it once attached."""
    forwarder = _SignalForwarder()
    forwarder(signal.SIGTERM, None)
    assert forwarder.pending == [signal.SIGTERM]

    process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    forwarder.attach(process)

    assert process.wait(timeout=20) == -signal.SIGTERM
    assert forwarder.pending == []


@posix_only
@pytest.mark.integration
def test_signals_installed_before_spawn(monkeypatch, py_stage):
    """Forwarding handlers are already in place when the child is started."""
    seen = []
    real_popen = subprocess.Popen

    def recording_popen(*args, **kwargs):
        seen.append(signal.getsignal(signal.SIGTERM))
        return real_popen(*args, **kwargs)

    monkeypatch.setattr(runner.subprocess, "Popen", recording_popen)

    result = run_stage(py_stage("build", "pass"))

    assert result.success
    assert isinstance(seen[0], _SignalForwarder)
