"""
imagepipe - build, render and convert images through a fail-fast command pipeline

Runs an ordered list of external commands (build the renderer, render an image,
convert it to a distribution format) and removes the intermediate image only
when every preceding stage succeeded.

Architecture:
- Orchestration Context: stage definitions, pipeline execution, configuration
- Utils: logging setup, run event log, timestamps
"""

__version__ = "0.1.0"
