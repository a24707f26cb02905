"""
Collaborator bundle for queue operations.

Every queue operation takes a QueueServices so the CLI/API wiring and
the tests can swap in their own store, runner and session registry.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from features.queue.audit import QueueAuditLog


@dataclass
class QueueServices:
    town_root: Path
    store: Any  # BdStore-compatible issue store
    formulas: Any = None  # FormulaCatalog-compatible
    convoys: Any = None  # ConvoyTracker-compatible
    runner: Any = None  # SlingRunner-compatible
    sessions: Any = None  # TmuxSessionRegistry-compatible
    notifier: Any = None  # RigNotifier-compatible
    audit: QueueAuditLog = field(default_factory=QueueAuditLog)
    sleep: Callable[[float], None] = time.sleep


def default_services(town_root: Path | str, actor: str = "") -> QueueServices:
    """Wire the real bd / gt / tmux collaborators for town_root."""
    from activities.bd import BdStore
    from activities.convoys import ConvoyTracker
    from activities.formulas import FormulaCatalog
    from activities.sessions import TmuxSessionRegistry
    from activities.sling import RigNotifier, SlingRunner

    root = Path(town_root)
    store = BdStore(root)
    return QueueServices(
        town_root=root,
        store=store,
        formulas=FormulaCatalog(store),
        convoys=ConvoyTracker(store, root),
        runner=SlingRunner(),
        sessions=TmuxSessionRegistry(),
        notifier=RigNotifier(),
        audit=QueueAuditLog(actor=actor),
    )
