"""
Redis-backed record of controller runs
"""

import json
import logging
from typing import Dict, List, Optional

import redis

from deploy_guardian.models import ControllerResult
from deploy_guardian.utils import get_audit_logger, AuditAction


logger = logging.getLogger(__name__)

audit_logger = get_audit_logger()

RUN_TTL_SECONDS = 86400


class RunStateStore:
    """
    Persists each run's state transitions so operators and re-runs can see
    how far a previous attempt got. Store failures never fail a run.
    """

    def __init__(self, redis_client: redis.Redis, ttl: int = RUN_TTL_SECONDS):
        self.redis_client = redis_client
        self.ttl = ttl

    @classmethod
    def from_config(cls, cfg) -> 'RunStateStore':
        return cls(redis.Redis(
            host=cfg.redis_host,
            port=cfg.redis_port,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        ))

    @staticmethod
    def _key(deployment_id: str) -> str:
        return f"run:{deployment_id}"

    def save(self, result: ControllerResult) -> bool:
        """Store the run under its deployment id with a 24h TTL"""
        try:
            self.redis_client.setex(
                self._key(result.deployment_id),
                self.ttl,
                json.dumps(result.to_dict())
            )
        except redis.RedisError as e:
            logger.warning(f"Failed to save run state for {result.deployment_id}: {e}")
            return False

        audit_logger.log_event(
            action=AuditAction.STATE_SAVED,
            deployment_id=result.deployment_id,
            environment=result.environment,
            tag=result.tag,
            details={"state": result.final_state.value}
        )
        return True

    def get(self, deployment_id: str) -> Optional[Dict]:
        try:
            data = self.redis_client.get(self._key(deployment_id))
        except redis.RedisError as e:
            logger.warning(f"Failed to read run state for {deployment_id}: {e}")
            return None
        return json.loads(data) if data else None

    def recent(self, environment: Optional[str] = None, limit: int = 10) -> List[Dict]:
        """Most recent runs first, optionally for one environment"""
        runs = []
        try:
            for key in self.redis_client.scan_iter(match="run:*"):
                data = self.redis_client.get(key)
                if not data:
                    continue
                run = json.loads(data)
                if environment is None or run.get('environment') == environment:
                    runs.append(run)
        except redis.RedisError as e:
            logger.warning(f"Failed to list runs: {e}")
            return []

        runs.sort(key=lambda run: run.get('timestamp', 0), reverse=True)
        return runs[:limit]

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError:
            return False
