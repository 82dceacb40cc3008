"""
Error taxonomy for the rollback controller
"""

from typing import Optional


class GuardianError(Exception):
    """Base class for all controller errors"""


class NoPriorVersion(GuardianError):
    """Version history holds nothing to roll back to"""

    def __init__(self, environment: str, current_tag: str):
        self.environment = environment
        self.current_tag = current_tag
        super().__init__(
            f"No prior version available for {environment} "
            f"(current tag {current_tag})"
        )


class PersistenceError(GuardianError):
    """The manifest store could not durably record a change"""


class WriteConflict(GuardianError):
    """A concurrent commit landed before ours could be pushed"""


class GitCommandError(GuardianError):
    """A git subprocess exited non-zero or timed out"""

    def __init__(self, args: tuple, returncode: Optional[int], stderr: str):
        self.command = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(args)} failed (rc={returncode}): {stderr.strip()}"
        )
