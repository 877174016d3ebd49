"""Sync orchestration: the per-integration runner and the background scheduler."""

from aumos_integration_sync.sync.runner import SyncResult, SyncRunner
from aumos_integration_sync.sync.scheduler import SchedulerStatus, SyncScheduler, TriggerResult

__all__ = ["SchedulerStatus", "SyncResult", "SyncRunner", "SyncScheduler", "TriggerResult"]
