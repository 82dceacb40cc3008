import logging
import time
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from kubernetes import client
from prometheus_client import Counter, Histogram, make_asgi_app
from pydantic import BaseModel, Field

from deploy_guardian.config import get_config
from deploy_guardian.controller import RollbackController
from deploy_guardian.models import ENVIRONMENTS, DeploymentEvent, RunOutcome
from deploy_guardian.utils import get_audit_logger


logger = logging.getLogger(__name__)

app = FastAPI(
    title="Deploy Guardian API",
    description="Post-deployment health monitoring with automated GitOps rollback",
    version="1.0.0"
)

# Prometheus metrics
runs_counter = Counter(
    'guardian_runs_total',
    'Controller runs by outcome',
    ['environment', 'outcome']
)
rollback_counter = Counter(
    'guardian_rollbacks_total',
    'Rollbacks committed',
    ['environment', 'reason']
)
sync_counter = Counter(
    'guardian_sync_requests_total',
    'GitOps sync requests by result',
    ['environment', 'result']
)
probe_duration = Histogram(
    'guardian_health_probe_duration_seconds',
    'Health probe duration in seconds',
    ['environment']
)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

_controller: Optional[RollbackController] = None


def get_controller() -> RollbackController:
    """Build the controller on first use"""
    global _controller
    if _controller is None:
        cfg = get_config()
        get_audit_logger().enabled = cfg.enable_audit_logging
        _controller = RollbackController.from_config(cfg)
    return _controller


# Request models
class DeploymentPayload(BaseModel):
    """Deployment event sent by the release pipeline"""
    environment: str
    tag: str = Field(min_length=1)
    commit: str = Field(min_length=1)
    timestamp: Optional[float] = None


class HealthCheckRequest(BaseModel):
    """One-off health probe request"""
    environment: str
    workloads: Optional[List[str]] = None
    timeout: Optional[float] = Field(default=None, gt=0, le=120)


def record_run(controller: RollbackController, event: DeploymentEvent) -> None:
    """Background task: run the controller and export its outcome as metrics"""
    try:
        result = controller.run(event)
    except Exception as e:
        logger.error(f"Controller run for {event.deployment_id} crashed: {e}", exc_info=True)
        runs_counter.labels(environment=event.environment, outcome='crashed').inc()
        return

    runs_counter.labels(
        environment=event.environment,
        outcome=result.outcome.value if result.outcome else 'unknown'
    ).inc()

    if result.outcome is RunOutcome.ROLLED_BACK and result.plan:
        rollback_counter.labels(
            environment=event.environment,
            reason=result.plan.reason.value
        ).inc()
    if result.sync_result:
        sync_counter.labels(
            environment=event.environment,
            result=result.sync_result.value
        ).inc()


# API Endpoints
@app.get("/")
def root():
    """Root endpoint"""
    return {
        "service": "Deploy Guardian",
        "version": "1.0.0",
        "status": "healthy",
        "features": [
            "Settle delay before health evaluation",
            "Kubernetes readiness probing",
            "Automated GitOps manifest rollback",
            "ArgoCD sync trigger with polling fallback",
            "Slack, Teams and Grafana notifications",
            "Audit trail of every controller decision"
        ]
    }


@app.get("/health")
def health(controller: RollbackController = Depends(get_controller)):
    """Health check endpoint"""
    redis_healthy = controller.state_store.ping() if controller.state_store else None

    try:
        client.VersionApi(controller.probe.apps_api.api_client).get_code(_request_timeout=5)
        k8s_healthy = True
    except Exception as e:
        logger.warning(f"Kubernetes API unreachable: {e}")
        k8s_healthy = False

    overall_healthy = k8s_healthy and redis_healthy is not False

    return {
        "status": "healthy" if overall_healthy else "degraded",
        "redis": {True: "healthy", False: "unhealthy", None: "disabled"}[redis_healthy],
        "kubernetes": "healthy" if k8s_healthy else "unhealthy"
    }


@app.post("/webhook/deployment", status_code=202)
async def deployment_webhook(
    payload: DeploymentPayload,
    background_tasks: BackgroundTasks,
    controller: RollbackController = Depends(get_controller)
):
    """
    Receive a deployment event and process it in the background.
    The settle delay makes a run last minutes, so the response only
    acknowledges the event.
    """
    if payload.environment not in ENVIRONMENTS:
        raise HTTPException(
            status_code=422,
            detail=f"environment must be one of {list(ENVIRONMENTS)}"
        )

    kwargs = {}
    if payload.timestamp is not None:
        kwargs['timestamp'] = payload.timestamp
    event = DeploymentEvent(
        environment=payload.environment,
        tag=payload.tag,
        commit=payload.commit,
        **kwargs
    )
    logger.info(f"Received deployment webhook: {event.deployment_id}")

    monitored = event.environment in controller.monitored_environments
    background_tasks.add_task(record_run, controller, event)

    return JSONResponse(
        status_code=202,
        content={
            "status": "accepted",
            "deployment_id": event.deployment_id,
            "monitored": monitored
        }
    )


@app.post("/health-check")
def check_health(
    request: HealthCheckRequest,
    controller: RollbackController = Depends(get_controller)
):
    """Run a one-off health probe without acting on the result"""
    if request.environment not in ENVIRONMENTS:
        raise HTTPException(status_code=422, detail="unknown environment")

    start_time = time.time()
    verdict = controller.probe.evaluate(
        request.environment,
        request.workloads or controller.workloads,
        request.timeout or controller.health_check_timeout
    )
    duration = time.time() - start_time
    probe_duration.labels(environment=request.environment).observe(duration)

    response = verdict.to_dict()
    response["environment"] = request.environment
    response["check_duration_seconds"] = round(duration, 2)
    return response


@app.get("/runs/recent")
def recent_runs(
    environment: Optional[str] = None,
    limit: int = 10,
    controller: RollbackController = Depends(get_controller)
):
    """Most recent controller runs"""
    if controller.state_store is None:
        raise HTTPException(status_code=503, detail="Run-state store disabled")
    runs = controller.state_store.recent(environment=environment, limit=limit)
    return {"count": len(runs), "runs": runs}


@app.get("/runs/{deployment_id}")
def get_run(deployment_id: str, controller: RollbackController = Depends(get_controller)):
    """State of one controller run"""
    if controller.state_store is None:
        raise HTTPException(status_code=503, detail="Run-state store disabled")
    run = controller.state_store.get(deployment_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@app.get("/config")
def effective_config():
    """Effective configuration, credentials omitted"""
    return get_config().to_public_dict()
