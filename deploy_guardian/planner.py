"""
Selection of the version to roll back to
"""

import logging

from deploy_guardian.exceptions import NoPriorVersion
from deploy_guardian.models import RollbackPlan, RollbackReason, VersionRecord


logger = logging.getLogger(__name__)


class RollbackPlanner:
    """Chooses a rollback target from an environment's version record"""

    def select_target(
        self,
        environment: str,
        current_tag: str,
        history: VersionRecord,
        reason: RollbackReason = RollbackReason.HEALTH_CHECK_FAILED
    ) -> RollbackPlan:
        """
        Select the entry preceding ``current_tag`` in ``history``

        Entries that share ``current_tag`` are skipped; redeploying the broken
        tag is never a valid rollback. When ``current_tag`` is absent from the
        record, the newest entry with a different tag is used.

        Raises:
            NoPriorVersion: the record has at most one entry, or no earlier
                entry declares a different tag
        """
        if len(history) <= 1:
            raise NoPriorVersion(environment, current_tag)

        # Start just before the latest occurrence of the current tag
        start = len(history) - 1
        for index in range(len(history) - 1, -1, -1):
            if history[index].tag == current_tag:
                start = index - 1
                break

        for index in range(start, -1, -1):
            candidate = history[index]
            if candidate.tag != current_tag:
                logger.info(
                    f"Rollback target for {environment}: {current_tag} -> {candidate.tag} "
                    f"(commit {candidate.commit[:7]})"
                )
                return RollbackPlan(
                    environment=environment,
                    current_tag=current_tag,
                    target_tag=candidate.tag,
                    target_commit=candidate.commit,
                    reason=reason
                )

        raise NoPriorVersion(environment, current_tag)
