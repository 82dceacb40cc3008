"""
Active reconciliation requests against ArgoCD
"""

import logging
from typing import Optional
from urllib.parse import quote

import requests

from deploy_guardian.models import SyncResult


logger = logging.getLogger(__name__)


class SyncNotifier:
    """
    Asks ArgoCD to reconcile an environment's application right away.

    A failed request is not an error: ArgoCD's own polling loop picks the
    commit up later, so every failure maps to ``SyncResult.DEFERRED``.
    """

    def __init__(
        self,
        server: Optional[str],
        token: Optional[str],
        app_template: str = '{app}-{environment}',
        app_name: str = 'platform',
        timeout: float = 10.0,
        verify_tls: bool = True
    ):
        self.server = server.rstrip('/') if server else None
        self.token = token
        self.app_template = app_template
        self.app_name = app_name
        self.timeout = timeout
        self.verify_tls = verify_tls

    def application_for(self, environment: str) -> str:
        return self.app_template.format(app=self.app_name, environment=environment)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def trigger(self, environment: str) -> SyncResult:
        """
        Request an immediate sync of the environment's application

        Returns:
            SYNCED when ArgoCD accepted the request, DEFERRED otherwise
        """
        application = self.application_for(environment)

        if not self.server or not self.token:
            logger.info(
                f"ArgoCD not configured - {application} will be reconciled by polling"
            )
            return SyncResult.DEFERRED

        url = f"{self.server}/api/v1/applications/{quote(application, safe='')}/sync"
        body = {"prune": False, "dryRun": False}

        try:
            response = requests.post(
                url,
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
                verify=self.verify_tls
            )
        except requests.exceptions.Timeout:
            logger.info(f"ArgoCD sync request for {application} timed out - deferring")
            return SyncResult.DEFERRED
        except requests.exceptions.RequestException as e:
            logger.info(f"ArgoCD sync request for {application} failed: {e} - deferring")
            return SyncResult.DEFERRED

        if response.status_code in (401, 403):
            logger.info(
                f"ArgoCD rejected sync for {application} "
                f"({response.status_code}) - check ARGOCD_TOKEN; deferring"
            )
            return SyncResult.DEFERRED

        if not 200 <= response.status_code < 300:
            logger.info(
                f"ArgoCD sync for {application} returned "
                f"{response.status_code} - deferring"
            )
            return SyncResult.DEFERRED

        logger.info(f"ArgoCD sync triggered for {application}")
        return SyncResult.SYNCED
