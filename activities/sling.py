"""
Activity: Execution — hands a dispatched bead to ``gt sling``, which spawns
and supervises the polecat session.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

import config
from models.schemas import SlingParams, SlingResult

log = logging.getLogger(__name__)


def build_sling_args(params: SlingParams) -> list[str]:
    """Translate SlingParams into gt sling arguments."""
    args = ["sling", params.bead_id, params.rig]
    if params.hook_raw_bead:
        args.append("--hook-raw-bead")
    elif params.formula:
        args.append(f"--formula={params.formula}")
    if params.args:
        args.append(f"--args={params.args}")
    for var in params.vars:
        args.append(f"--var={var}")
    if params.merge:
        args.append(f"--merge={params.merge}")
    if params.base_branch:
        args.append(f"--base-branch={params.base_branch}")
    if params.no_merge:
        args.append("--no-merge")
    if params.owned:
        args.append("--owned")
    if params.account:
        args.append(f"--account={params.account}")
    if params.agent:
        args.append(f"--agent={params.agent}")
    if params.mode:
        args.append(f"--mode={params.mode}")
    if params.no_convoy:
        args.append("--no-convoy")
    if params.no_boot:
        args.append("--no-boot")
    return args


class SlingRunner:
    """Runs gt sling with a bounded timeout."""

    def __init__(self, binary: str | None = None, timeout: float | None = None):
        self.binary = binary or config.GT_BIN
        self.timeout = timeout or config.DISPATCH_TIMEOUT

    def run(self, params: SlingParams, town_root: Path | str) -> SlingResult:
        args = build_sling_args(params)
        env = dict(os.environ)
        if params.context:
            env["GT_SLING_CONTEXT"] = params.context
        log.info("Slinging %s → %s", params.bead_id, params.rig)
        try:
            output = subprocess.run(
                [self.binary, *args],
                capture_output=True,
                text=True,
                cwd=str(town_root),
                env=env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return SlingResult(ok=False, message=f"sling timed out after {self.timeout:.0f}s")
        except OSError as e:
            return SlingResult(ok=False, message=f"sling could not start: {e}")

        if output.returncode == 0:
            return SlingResult(ok=True, message=output.stdout.strip())
        message = output.stderr.strip() or output.stdout.strip() or f"exit status {output.returncode}"
        return SlingResult(ok=False, message=message.splitlines()[-1])


class RigNotifier:
    """Wakes a rig's witness after the queue dispatched into it."""

    def __init__(self, binary: str | None = None):
        self.binary = binary or config.GT_BIN

    def notify(self, rig: str, count: int, town_root: Path | str) -> None:
        message = f"Queue dispatched {count} polecat(s) to {rig}"
        try:
            output = subprocess.run(
                [self.binary, "nudge", f"{rig}/witness", message],
                capture_output=True,
                text=True,
                cwd=str(town_root),
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("Could not wake witness for %s: %s", rig, e)
            return
        if output.returncode != 0:
            log.warning("Could not wake witness for %s: %s", rig, output.stderr.strip())
