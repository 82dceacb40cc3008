"""
Readiness probe for the workloads of one environment
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List, Optional

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from deploy_guardian.models import HealthStatus, HealthVerdict, WorkloadHealth


logger = logging.getLogger(__name__)


def load_kubernetes_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig"""
    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except k8s_config.ConfigException:
        k8s_config.load_kube_config()
        logger.info("Loaded local kubeconfig")


class HealthProbe:
    """
    Compares ready replicas against desired replicas for a set of Deployments.

    Queries are issued concurrently, one per workload, and joined before the
    verdict is computed. A failed or slow query makes the verdict UNKNOWN.
    """

    def __init__(
        self,
        apps_api: Optional[client.AppsV1Api] = None,
        namespace_template: str = '{environment}',
        max_workers: int = 8
    ):
        self.apps_api = apps_api or client.AppsV1Api()
        self.namespace_template = namespace_template
        self.max_workers = max_workers

    @classmethod
    def from_cluster(cls, namespace_template: str = '{environment}') -> 'HealthProbe':
        load_kubernetes_config()
        return cls(client.AppsV1Api(), namespace_template=namespace_template)

    def read_workload(self, namespace: str, name: str, timeout: float) -> WorkloadHealth:
        """
        Read desired and ready replica counts of one Deployment

        Raises:
            ApiException: the API server rejected the request
            urllib3 HTTPError: the API server could not be reached in time
        """
        deployment = self.apps_api.read_namespaced_deployment(
            name=name,
            namespace=namespace,
            _request_timeout=timeout
        )
        desired = deployment.spec.replicas
        if desired is None:
            desired = 1
        ready = deployment.status.ready_replicas or 0
        return WorkloadHealth(name=name, desired=desired, ready=ready)

    def evaluate(
        self,
        environment: str,
        workload_names: Iterable[str],
        timeout: float
    ) -> HealthVerdict:
        """
        Evaluate the health of an environment's workloads

        Args:
            environment: Environment whose namespace is probed
            workload_names: Deployments to check
            timeout: Upper bound in seconds for the whole evaluation

        Returns:
            HEALTHY when every workload with desired > 0 is fully ready,
            UNHEALTHY when any of them is not, UNKNOWN when a query failed
        """
        names = list(workload_names)
        namespace = self.namespace_template.format(environment=environment)
        start_time = time.time()

        if not names:
            return HealthVerdict.unknown("No workloads configured to probe")

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(names)),
            thread_name_prefix="health-probe"
        )
        try:
            futures = {
                executor.submit(self.read_workload, namespace, name, timeout): name
                for name in names
            }
            done, pending = wait(futures, timeout=timeout)
        finally:
            # Never block on a hung query past the deadline
            executor.shutdown(wait=False, cancel_futures=True)

        if pending:
            slow = sorted(futures[f] for f in pending)
            logger.error(
                f"Health probe timed out after {timeout}s in {namespace}: {slow}"
            )
            return HealthVerdict.unknown(
                f"Orchestration query timed out after {timeout}s for {', '.join(slow)}"
            )

        results: List[WorkloadHealth] = []
        for future in futures:
            name = futures[future]
            try:
                results.append(future.result())
            except (ApiException, Urllib3HTTPError, OSError) as e:
                logger.error(f"Error reading deployment {namespace}/{name}: {e}")
                return HealthVerdict.unknown(
                    f"Orchestration query failed for {name}: {e}"
                )

        verdict = self._verdict(results)
        logger.info(
            f"Health probe for {environment}: {verdict.status.value} "
            f"({time.time() - start_time:.2f}s)",
            extra={
                "environment": environment,
                "workloads": {w.name: f"{w.ready}/{w.desired}" for w in results}
            }
        )
        return verdict

    @staticmethod
    def _verdict(results: List[WorkloadHealth]) -> HealthVerdict:
        included = [w for w in results if w.included]
        failing = [w for w in included if not w.healthy]

        if failing:
            reason = ", ".join(
                f"{w.name} {w.ready}/{w.desired} ready" for w in failing
            )
            return HealthVerdict(
                status=HealthStatus.UNHEALTHY,
                reason=reason,
                workloads=tuple(results)
            )

        excluded = [w.name for w in results if not w.included]
        reason = f"{len(included)} workloads ready"
        if excluded:
            reason += f", scaled to zero: {', '.join(excluded)}"
        return HealthVerdict(
            status=HealthStatus.HEALTHY,
            reason=reason,
            workloads=tuple(results)
        )
