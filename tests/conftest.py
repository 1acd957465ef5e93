"""Shared fixtures: stub stages built from the running Python interpreter."""

import sys
from pathlib import Path

import pytest
from loguru import logger

from imagepipe.contexts.orchestration.stages import Stage

# Appends the stage name to a call log, then exits with the requested code
RECORDING_TOOL = (
    "import sys\n"
    "with open(sys.argv[1], 'a') as f:\n"
    "    f.write(sys.argv[2] + '\\n')\n"
    "sys.exit(int(sys.argv[3]))\n"
)

PPM_IMAGE = "P3\n2 1\n255\n255 0 0\n0 0 255\n"


def python_stage(name: str, code: str, *args, stdout_path=None) -> Stage:
    """Stage running an inline Python program, so tests need no external tools."""
    return Stage(name, sys.executable, ("-c", code, *[str(a) for a in args]), stdout_path)


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop sinks added by setup_logger() so later tests log to stderr again."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="DEBUG")


@pytest.fixture
def call_log(tmp_path) -> Path:
    return tmp_path / "calls.txt"


@pytest.fixture
def recording_stage(call_log):
    """Factory for stages that record their own execution in call_log."""

    def make(name: str, exit_code: int = 0) -> Stage:
        return python_stage(name, RECORDING_TOOL, call_log, name, exit_code)

    return make


@pytest.fixture
def executed(call_log):
    """Reads back the names of the stages that ran, in order."""

    def read() -> list:
        if not call_log.exists():
            return []
        return call_log.read_text().split()

    return read


@pytest.fixture
def image_stages(tmp_path):
    """
    Stub render/convert/cleanup stages mirroring the toytracer pipeline.

    Render writes a PPM to stdout (redirected to result/current.ppm), convert
    copies it to result/current.png, cleanup removes the PPM.
    """
    result_dir = tmp_path / "result"
    intermediate = result_dir / "current.ppm"
    final = result_dir / "current.png"

    build = python_stage("build", "import sys; sys.exit(0)")
    render = python_stage(
        "render", f"import sys; sys.stdout.write({PPM_IMAGE!r})", stdout_path=intermediate
    )
    convert = python_stage(
        "convert", "import shutil, sys; shutil.copyfile(sys.argv[1], sys.argv[2])", intermediate, final
    )
    cleanup = python_stage("cleanup", "import os, sys; os.remove(sys.argv[1])", intermediate)

    return {
        "build": build,
        "render": render,
        "convert": convert,
        "cleanup": cleanup,
        "intermediate": intermediate,
        "final": final,
    }


@pytest.fixture
def py_stage():
    """Factory fixture for python_stage()."""
    return python_stage
