"""Periodic synchronization and self-update."""

from dpiwarden.sync.orchestrator import SyncOrchestrator, SyncReport
from dpiwarden.sync.self_update import NoopSelfUpdater, ReleaseSelfUpdater, SelfUpdater

__all__ = [
	"SyncOrchestrator",
	"SyncReport",
	"NoopSelfUpdater",
	"ReleaseSelfUpdater",
	"SelfUpdater",
]
