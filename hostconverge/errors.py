"""
Error taxonomy for the host-configuration engine.

The core only raises these; the CLI and API decide how they are presented.
"""

from typing import List, Optional


class HostConvergeError(Exception):
    """Base error of the engine."""
    pass


class ProbeError(HostConvergeError):
    """The host environment could not be read (permission denied, collaborator failure)."""
    pass


class PlanConflictError(HostConvergeError):
    """The desired configuration contradicts itself."""

    def __init__(self, message: str, keys: Optional[List[str]] = None):
        super().__init__(message)
        self.keys = keys or []


class ValidationError(HostConvergeError):
    """An adapter pre-flight check failed."""
    pass


class ApplyError(HostConvergeError):
    """A host mutation failed or timed out."""
    pass


class FatalRollbackError(HostConvergeError):
    """
    Restoring a backup failed. The host is in an unknown state and an
    operator has to intervene.

    `context` carries the diagnostics gathered by the adapter; the
    Reconciler attaches the finalized `summary` before re-raising.
    """

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.context = context or {}
        self.summary = None


class ConcurrentRunError(HostConvergeError):
    """Another reconciliation run holds the host lock."""
    pass


class ReportFinalizedError(HostConvergeError):
    """A finalized session report was written to."""
    pass


class BackendError(HostConvergeError):
    """A collaborator command (apt, systemctl, ufw, ...) failed."""

    def __init__(
        self,
        message: str,
        cmd: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.cmd = cmd or []
        self.returncode = returncode
        self.stderr = stderr
