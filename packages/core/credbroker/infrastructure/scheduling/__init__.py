"""Periodic maintenance scheduling."""

from credbroker.infrastructure.scheduling.scheduler import SweepJob, SweepScheduler

__all__ = ["SweepJob", "SweepScheduler"]
