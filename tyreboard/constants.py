from __future__ import annotations

from typing import Dict, List, Optional, Tuple

PROTOCOL_LABELS: Dict[str, str] = {
    "mf62": "MF6pt2",
    "mf52": "MF5pt2",
    "ftire": "FTire",
    "cdtire": "CDTire",
    "custom": "Custom",
}

PROTOCOL_KEYS: List[str] = list(PROTOCOL_LABELS.keys())

# Applied in order; a later match overrides an earlier one.
PROTOCOL_NAME_PATTERNS: List[Tuple[str, str]] = [
    ("mf6", "mf62"),
    ("mf5", "mf52"),
    ("ftire", "ftire"),
    ("cdtire", "cdtire"),
    ("custom", "custom"),
]

NO_DEPENDENCY_MARKERS = {"", "-"}

DEFAULT_CONFIG: Dict[str, object] = {
    "solver_command": "abaqus job={job} interactive",
    "job_timeout_seconds": 3600,
    "keepalive_interval_seconds": 15,
    "tydex_template_dir": "templates/tydex",
    "inter_run_delay_seconds": 1.0,
    "run_finish_timeout_seconds": 1200,
    "artifact_grace_seconds": 0.9,
    "default_run_estimate_seconds": 30,
    "pause_poll_seconds": 0.4,
}


def protocol_label(key: str) -> str:
    return PROTOCOL_LABELS.get(key, "Unknown")


def protocol_key_for_label(label: str) -> str:
    for key, value in PROTOCOL_LABELS.items():
        if value.lower() == label.lower():
            return key
    if label.lower() in PROTOCOL_LABELS:
        return label.lower()
    raise ValueError(f"Unknown protocol '{label}'")


def protocol_key_from_name(name: str) -> Optional[str]:
    """Map a stored protocol name such as 'MF 6.2 (mf62)' onto a table key."""
    resolved = None
    lowered = (name or "").lower()
    for pattern, key in PROTOCOL_NAME_PATTERNS:
        if pattern in lowered:
            resolved = key
    return resolved
