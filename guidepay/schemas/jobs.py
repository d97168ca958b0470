"""Outcome of handing a background job to the queue."""

from typing import Optional

from ._strict_base import StrictModel


class EnqueueResult(StrictModel):
    accepted: bool
    queue: str
    job_name: str
    job_id: Optional[str] = None
    deduplicated: bool = False
    error: Optional[str] = None
