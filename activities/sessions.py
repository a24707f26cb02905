"""
Activity: Runtime session registry — tmux sessions decoded into agent roles.

Session naming:
  hq-mayor, hq-deacon             town-level agents
  gt-<rig>-witness                rig supervisor
  gt-<rig>-refinery               merge queue processor
  gt-<rig>-crew-<name>            human-directed crew
  gt-<rig>-<name>                 polecat (worker)
"""

from __future__ import annotations

import logging
import subprocess

import config
from models.schemas import SessionIdentity, SessionRole

log = logging.getLogger(__name__)

TOWN_PREFIX = "hq-"
RIG_PREFIX = "gt-"


def parse_session_name(name: str) -> SessionIdentity | None:
    """Decode a session name; None if it is not an agent-managed session."""
    if name.startswith(TOWN_PREFIX):
        role = name[len(TOWN_PREFIX):]
        if role == SessionRole.MAYOR.value:
            return SessionIdentity(role=SessionRole.MAYOR)
        if role == SessionRole.DEACON.value:
            return SessionIdentity(role=SessionRole.DEACON)
        return None

    if not name.startswith(RIG_PREFIX):
        return None
    rest = name[len(RIG_PREFIX):]

    if "-crew-" in rest:
        rig, _, crew = rest.partition("-crew-")
        if rig and crew:
            return SessionIdentity(role=SessionRole.CREW, rig=rig, name=crew)
        return None

    rig, sep, tail = rest.rpartition("-")
    if not sep or not rig or not tail:
        return None
    if tail == SessionRole.WITNESS.value:
        return SessionIdentity(role=SessionRole.WITNESS, rig=rig)
    if tail == SessionRole.REFINERY.value:
        return SessionIdentity(role=SessionRole.REFINERY, rig=rig)
    return SessionIdentity(role=SessionRole.POLECAT, rig=rig, name=tail)


def list_sessions() -> list[str]:
    """Names of running tmux sessions; empty when tmux has no server."""
    try:
        result = subprocess.run(
            [config.TMUX_BIN, "list-sessions", "-F", "#{session_name}"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        log.debug("tmux unavailable: %s", e)
        return []
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


class TmuxSessionRegistry:
    """Counts running polecats from the tmux session list."""

    def sessions(self) -> list[str]:
        return list_sessions()

    def count_active_polecats(self) -> int:
        count = 0
        for name in self.sessions():
            identity = parse_session_name(name)
            if identity and identity.role == SessionRole.POLECAT:
                count += 1
        return count
