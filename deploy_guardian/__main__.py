"""
Command-line entry point.

    python -m deploy_guardian monitor --environment prod --tag main-abc1234 --commit abc1234...
    python -m deploy_guardian serve --port 8000
"""

import argparse
import json
import os
import sys
from typing import List, Optional

from deploy_guardian.config import get_config
from deploy_guardian.models import ENVIRONMENTS, DeploymentEvent, RunOutcome
from deploy_guardian.utils import get_audit_logger, setup_logging


EXIT_OK = 0
EXIT_DEGRADED = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='deploy_guardian',
        description='Post-deployment health monitor with automated GitOps rollback'
    )
    commands = parser.add_subparsers(dest='command', required=True)

    monitor = commands.add_parser('monitor', help='Monitor one deployment and roll back if unhealthy')
    monitor.add_argument('--environment', required=True, choices=ENVIRONMENTS)
    monitor.add_argument('--tag', required=True, help='Image tag that was deployed')
    monitor.add_argument('--commit', required=True, help='Source commit of the build')
    monitor.add_argument(
        '--settle-delay', type=float, default=None,
        help='Override SETTLE_DELAY (seconds)'
    )

    serve = commands.add_parser('serve', help='Run the webhook API')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=int(os.getenv('PORT', '8000')))

    return parser


def monitor(args) -> int:
    from deploy_guardian.controller import RollbackController

    cfg = get_config()
    if args.settle_delay is not None:
        cfg.settle_delay = args.settle_delay
        cfg.validate()

    controller = RollbackController.from_config(cfg)
    result = controller.run(DeploymentEvent(
        environment=args.environment,
        tag=args.tag,
        commit=args.commit
    ))

    print(json.dumps(result.to_dict(), indent=2))
    if result.outcome in (RunOutcome.SUCCEEDED, RunOutcome.SKIPPED):
        return EXIT_OK
    return EXIT_DEGRADED


def serve(args) -> int:
    import uvicorn

    uvicorn.run(
        'deploy_guardian.api:app',
        host=args.host,
        port=args.port,
        log_level=get_config().log_level.lower()
    )
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    cfg = get_config()
    setup_logging(level=cfg.log_level, use_json=cfg.log_format == 'json')
    get_audit_logger().enabled = cfg.enable_audit_logging

    if args.command == 'monitor':
        return monitor(args)
    return serve(args)


if __name__ == '__main__':
    sys.exit(main())
