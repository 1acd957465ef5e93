"""
Built-in pipeline definition.

Reproduces the toytracer update-image script: build the renderer in release mode,
render to a PPM file, convert it to PNG with ImageMagick, then delete the PPM.
Paths are relative to the working directory (the toytracer checkout).
"""

from pathlib import Path
from typing import Optional

from imagepipe.contexts.orchestration.config import PipelineConfig
from imagepipe.contexts.orchestration.stages import Stage

RESULT_DIR = Path("result")
INTERMEDIATE_IMAGE = RESULT_DIR / "current.ppm"
FINAL_IMAGE = RESULT_DIR / "current.png"
RENDERER_BINARY = "target/release/toytracer"


def default_pipeline(working_dir: Optional[Path] = None) -> PipelineConfig:
    """Build -> Render -> Convert, with removal of the rendered PPM as cleanup."""
    stages = [
        Stage("build", "cargo", ("build", "--release")),
        Stage("render", RENDERER_BINARY, stdout_path=INTERMEDIATE_IMAGE),
        Stage("convert", "convert", (str(INTERMEDIATE_IMAGE), str(FINAL_IMAGE))),
    ]
    cleanup = Stage("cleanup", "rm", (str(INTERMEDIATE_IMAGE),))

    return PipelineConfig(stages=stages, cleanup=cleanup, working_dir=working_dir)
