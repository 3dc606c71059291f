"""
Campaigns — batch-call lifecycle, provider reconciliation and the one-shot
call follow-up.
"""
from campaigns.tracker import BatchLifecycleTracker, success_rate
from campaigns.side_effects import SideEffectRunner, SideEffectSkipped
from campaigns.followup import FollowUpMessenger
from campaigns.monitor import ProgressMonitor

__all__ = [
    "BatchLifecycleTracker", "success_rate",
    "SideEffectRunner", "SideEffectSkipped",
    "FollowUpMessenger", "ProgressMonitor",
]
