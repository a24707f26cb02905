"""
Queue feature — capacity-controlled dispatch of beads to polecats.

Public API:
    from features.queue import enqueue_targets, dispatch_queued_work
    from features.queue import queue_status, pause_queue, resume_queue, clear_queue
    from features.queue import default_services, EnqueueOptions
"""

from features.queue.control import clear_queue, pause_queue, queue_status, resume_queue
from features.queue.dispatch import dispatch_queued_work
from features.queue.enqueue import enqueue_bead
from features.queue.models import BatchResult, DispatchResult, EnqueueOptions, QueueMetadata
from features.queue.router import enqueue_targets
from features.queue.services import QueueServices, default_services

__all__ = [
    "BatchResult",
    "DispatchResult",
    "EnqueueOptions",
    "QueueMetadata",
    "QueueServices",
    "clear_queue",
    "default_services",
    "dispatch_queued_work",
    "enqueue_bead",
    "enqueue_targets",
    "pause_queue",
    "queue_status",
    "resume_queue",
]
