"""
Layer and batch lifecycle vocabularies.
"""

from typing import Literal

Layer = Literal["bronze", "silver", "gold"]
BatchStatus = Literal["pending", "in_progress", "completed", "failed"]

# Allowed ledger transitions; failed -> in_progress only through retry()
BATCH_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("in_progress",),
    "in_progress": ("completed", "failed"),
    "completed": (),
    "failed": ("in_progress",),
}

