"""
Pipeline event logging utilities (Tier 2 logging).

Appends one JSON object per line to the run event log so that past runs can be
filtered by run, stage or event type after the fact.

For detailed within-run logging (Tier 1), use imagepipe.utils.logger instead.

Usage:
    from imagepipe.utils.event_logging import log_pipeline_event

    log_pipeline_event(
        event_type="stage_failed",
        run_id="run_20251114_123456_3f9a1c",
        source="orchestration",
        stage="convert",
        exit_code=2,
    )

Event logging is disabled when PIPELINE_EVENTS_FILE is unset and no explicit
events_file is given.
"""

import json
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from imagepipe.utils.timestamp import now_exact

load_dotenv()

EVENT_TYPES = {"run_started", "stage_completed", "stage_failed", "run_completed"}


def events_file_from_env() -> Optional[Path]:
    """Event log location from PIPELINE_EVENTS_FILE, or None when unset."""
    value = os.getenv("PIPELINE_EVENTS_FILE")
    return Path(value) if value else None


def log_pipeline_event(
    event_type: str,
    run_id: str,
    source: str,
    events_file: Optional[Path] = None,
    **extra_fields,
) -> None:
    """
    Log an event to the run event log.

    Args:
        event_type: One of EVENT_TYPES
        run_id: Identifier of the pipeline run the event belongs to
        source: Event source (e.g., "orchestration", "cli")
        events_file: Event log path (default: PIPELINE_EVENTS_FILE env variable)
        **extra_fields: Additional event-specific fields

    Raises:
        ValueError: If event_type is unknown
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type '{event_type}'. Expected one of: {sorted(EVENT_TYPES)}")

    if events_file is None:
        events_file = events_file_from_env()
    if events_file is None:
        return

    events_file = Path(events_file)
    events_file.parent.mkdir(parents=True, exist_ok=True)

    event = {
        "timestamp": now_exact(),
        "event_type": event_type,
        "run_id": run_id,
        "source": source,
        **extra_fields,
    }

    with open(events_file, "a", encoding="utf-8") as f:
        f.write(json.dumps(event) + "\n")


def get_recent_events(
    n: int = 10,
    run_id: Optional[str] = None,
    event_type: Optional[str] = None,
    events_file: Optional[Path] = None,
) -> list[dict]:
    """
    Get the last n events from the event log, optionally filtered.

    Args:
        n: Number of recent events to return (default: 10)
        run_id: Filter to only events for this run (optional)
        event_type: Filter to only events of this type (optional)
        events_file: Event log path (default: PIPELINE_EVENTS_FILE env variable)

    Returns:
        List of event dicts (most recent last)
    """
    if events_file is None:
        events_file = events_file_from_env()
    if events_file is None or not Path(events_file).exists():
        return []

    events = []
    # Undecodable bytes are replaced so one bad line cannot abort the read
    with open(events_file, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            try:
                event = json.loads(line.strip())
            except json.JSONDecodeError:
                # Skip malformed lines
                continue
            if isinstance(event, dict):
                events.append(event)

    if run_id:
        events = [e for e in events if e.get("run_id") == run_id]

    if event_type:
        events = [e for e in events if e.get("event_type") == event_type]

    if n <= 0:
        return []
    return events[-n:] if len(events) > n else events
