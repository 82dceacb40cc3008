"""
Configuration for the rollback controller
"""

import os
from typing import Dict, List, Optional
from dataclasses import dataclass

from deploy_guardian.models import ENVIRONMENTS


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


@dataclass
class GuardianConfig:
    """Controller configuration loaded from the environment"""

    monitored_environments: List[str]
    settle_delay: float

    health_check_timeout: float
    workloads: List[str]
    namespace_template: str

    gitops_repo_path: str
    gitops_remote: str
    gitops_branch: str
    gitops_push: bool
    values_file_template: str
    tag_key_path: str
    max_write_attempts: int
    git_timeout: float
    git_author_name: str
    git_author_email: str
    source_repo_path: str

    argocd_server: Optional[str]
    argocd_token: Optional[str]
    argocd_app_template: str
    app_name: str
    sync_timeout: float

    slack_webhook_url: Optional[str]
    teams_webhook_url: Optional[str]
    grafana_url: Optional[str]
    grafana_api_key: Optional[str]
    notification_timeout: float
    changelog_limit: int
    dashboard_url: Optional[str]

    redis_host: str
    redis_port: int
    enable_state_store: bool

    log_level: str
    log_format: str
    enable_audit_logging: bool

    @classmethod
    def from_env(cls) -> 'GuardianConfig':
        """Load configuration from environment variables"""
        return cls(
            # Controller
            monitored_environments=_csv(os.getenv('MONITORED_ENVIRONMENTS', 'staging,prod')),
            settle_delay=float(os.getenv('SETTLE_DELAY', '60')),

            # Health probe
            health_check_timeout=float(os.getenv('HEALTH_CHECK_TIMEOUT', '10')),
            workloads=_csv(os.getenv('WORKLOADS', 'backend,frontend,ai-agent')),
            namespace_template=os.getenv('NAMESPACE_TEMPLATE', '{environment}'),

            # GitOps manifest repository
            gitops_repo_path=os.getenv('GITOPS_REPO_PATH', '.'),
            gitops_remote=os.getenv('GITOPS_REMOTE', 'origin'),
            gitops_branch=os.getenv('GITOPS_BRANCH', 'main'),
            gitops_push=os.getenv('GITOPS_PUSH', 'true').lower() == 'true',
            values_file_template=os.getenv(
                'VALUES_FILE_TEMPLATE', 'environments/{environment}/values.yaml'
            ),
            tag_key_path=os.getenv('TAG_KEY_PATH', 'image.tag'),
            max_write_attempts=int(os.getenv('MAX_WRITE_ATTEMPTS', '3')),
            git_timeout=float(os.getenv('GIT_TIMEOUT', '30')),
            git_author_name=os.getenv('GIT_AUTHOR_NAME', 'deploy-guardian'),
            git_author_email=os.getenv(
                'GIT_AUTHOR_EMAIL', 'deploy-guardian@users.noreply.github.com'
            ),
            source_repo_path=os.getenv('SOURCE_REPO_PATH') or os.getenv('GITOPS_REPO_PATH', '.'),

            # ArgoCD
            argocd_server=os.getenv('ARGOCD_SERVER') or None,
            argocd_token=os.getenv('ARGOCD_TOKEN') or None,
            argocd_app_template=os.getenv('ARGOCD_APP_TEMPLATE', '{app}-{environment}'),
            app_name=os.getenv('APP_NAME', 'platform'),
            sync_timeout=float(os.getenv('SYNC_TIMEOUT', '10')),

            # Notifications
            slack_webhook_url=os.getenv('SLACK_WEBHOOK_URL') or None,
            teams_webhook_url=os.getenv('TEAMS_WEBHOOK_URL') or None,
            grafana_url=os.getenv('GRAFANA_URL') or None,
            grafana_api_key=os.getenv('GRAFANA_API_KEY') or None,
            notification_timeout=float(os.getenv('NOTIFICATION_TIMEOUT', '5')),
            changelog_limit=int(os.getenv('CHANGELOG_LIMIT', '10')),
            dashboard_url=os.getenv('DASHBOARD_URL') or None,

            # Run-state store
            redis_host=os.getenv('REDIS_HOST', 'localhost'),
            redis_port=int(os.getenv('REDIS_PORT', '6379')),
            enable_state_store=os.getenv('ENABLE_STATE_STORE', 'true').lower() == 'true',

            # Logging
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_format=os.getenv('LOG_FORMAT', 'json'),
            enable_audit_logging=os.getenv('ENABLE_AUDIT_LOGGING', 'true').lower() == 'true'
        )

    def validate(self) -> None:
        """Validate configuration values"""
        unknown = [env for env in self.monitored_environments if env not in ENVIRONMENTS]
        if unknown:
            raise ValueError(
                f"monitored_environments contains unknown environments: {unknown}"
            )

        if not 0 <= self.settle_delay <= 1800:
            raise ValueError("settle_delay must be between 0-1800 seconds")

        if not 0 < self.health_check_timeout <= 120:
            raise ValueError("health_check_timeout must be > 0 and <= 120")

        if not self.workloads:
            raise ValueError("workloads must name at least one workload")

        if self.max_write_attempts < 1:
            raise ValueError("max_write_attempts must be >= 1")

        if not 0 < self.git_timeout <= 300:
            raise ValueError("git_timeout must be > 0 and <= 300")

        if not 0 < self.sync_timeout <= 120:
            raise ValueError("sync_timeout must be > 0 and <= 120")

        if not 0 < self.notification_timeout <= 60:
            raise ValueError("notification_timeout must be > 0 and <= 60")

        if self.changelog_limit < 1:
            raise ValueError("changelog_limit must be >= 1")

        if not self.tag_key_path or '' in self.tag_key_path.split('.'):
            raise ValueError("tag_key_path must be a dotted key such as 'image.tag'")

        if '{environment}' not in self.values_file_template:
            raise ValueError("values_file_template must contain '{environment}'")

        if self.redis_port < 1 or self.redis_port > 65535:
            raise ValueError("redis_port must be between 1-65535")

        if self.log_format not in ('json', 'text'):
            raise ValueError("log_format must be 'json' or 'text'")

    def to_public_dict(self) -> Dict:
        """Effective configuration without credentials"""
        return {
            'monitored_environments': self.monitored_environments,
            'settle_delay': self.settle_delay,
            'health_check_timeout': self.health_check_timeout,
            'workloads': self.workloads,
            'values_file_template': self.values_file_template,
            'tag_key_path': self.tag_key_path,
            'max_write_attempts': self.max_write_attempts,
            'gitops_branch': self.gitops_branch,
            'argocd_enabled': bool(self.argocd_server),
            'channels': {
                'slack': bool(self.slack_webhook_url),
                'teams': bool(self.teams_webhook_url),
                'grafana': bool(self.grafana_url and self.grafana_api_key),
            },
            'changelog_limit': self.changelog_limit,
            'state_store_enabled': self.enable_state_store,
        }


# Global config instance
_config: Optional[GuardianConfig] = None


def get_config() -> GuardianConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = GuardianConfig.from_env()
        _config.validate()
    return _config


def reload_config() -> GuardianConfig:
    """Reload configuration from environment (useful for testing)"""
    global _config
    _config = GuardianConfig.from_env()
    _config.validate()
    return _config
