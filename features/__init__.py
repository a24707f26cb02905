"""
Features package — one sub-package per self-contained feature.

features/queue/ holds the bead work queue:
    metadata.py / labels.py   — what a queued bead carries
    ready.py                  — which queued beads can run now
    enqueue.py / router.py    — getting work onto the queue
    dispatch.py / capacity.py — getting work off it, within limits
    state.py / control.py     — pause flag, telemetry, operator commands
    audit.py / db.py          — event trail (Postgres when configured)

Collaborators that shell out (bd, gt, tmux) live in activities/.
"""
