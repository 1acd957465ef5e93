"""Custom exceptions for the orchestration context."""

from pathlib import Path
from typing import Optional


class PipelineConfigError(ValueError):
    """
    Exception raised when a pipeline definition is missing or malformed.

    Attributes:
        message: Error description
        config_path: Path to the offending config file (None for in-memory configs)
        field: Dotted location of the offending field (e.g., 'stages.1.command')
    """

    def __init__(
        self,
        message: str,
        config_path: Optional[Path] = None,
        field: Optional[str] = None,
    ):
        self.message = message
        self.config_path = config_path
        self.field = field

        parts = [message]
        if field:
            parts.append(f"Field: {field}")
        if config_path:
            parts.append(f"Config: {config_path}")

        super().__init__("\n".join(parts))
