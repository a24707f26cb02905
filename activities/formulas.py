"""
Activity: Formula lookup and pre-validation.

``exists`` is a side-effect-free lookup; ``cook`` compiles the formula
against a bead without instantiating anything, so a broken template is
caught at enqueue time instead of mid dispatch cycle.
"""

from __future__ import annotations

import logging

from activities.bd import BdStore
from features.queue.errors import FormulaInvalidError

log = logging.getLogger(__name__)


class FormulaCatalog:
    def __init__(self, store: BdStore):
        self.store = store

    def exists(self, name: str) -> bool:
        result = self.store.run(["formula", "show", name, "--json"])
        return result.returncode == 0

    def cook(self, name: str, bead_id: str, variables: list[str] | None = None) -> None:
        """Dry-compile formula name for bead_id; raises FormulaInvalidError."""
        args = ["cook", name, "--dry-run", f"--var=issue={bead_id}"]
        args += [f"--var={v}" for v in variables or []]
        result = self.store.run(args)
        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip()
            raise FormulaInvalidError(f"formula {name} failed to cook for {bead_id}: {detail}")
        log.debug("Formula %s cooked cleanly for %s", name, bead_id)
