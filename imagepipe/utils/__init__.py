"""
Shared utilities for imagepipe.

Common functionality used across contexts:
- Logger setup with provenance
- Run event logging
- Timestamps
"""

from imagepipe.utils.timestamp import now, now_exact, today

__all__ = ["now", "now_exact", "today"]
