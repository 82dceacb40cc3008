"""
Best-effort delivery of deployment outcomes to chat and dashboards.

Each channel is attempted independently; a failing channel is logged and
never affects the others or the controller run.
"""

import logging
import time
from typing import Dict, List, Optional

import requests

from deploy_guardian.models import NotificationEvent, NotificationKind
from deploy_guardian.utils import get_audit_logger, AuditAction


logger = logging.getLogger(__name__)

audit_logger = get_audit_logger()

_COLORS = {
    NotificationKind.DEPLOY_SUCCESS: "2EB67D",
    NotificationKind.DEPLOY_FAILURE: "E01E5A",
    NotificationKind.ROLLBACK_TRIGGERED: "ECB22E",
}


class ChannelError(Exception):
    """A channel could not deliver a message"""


class NotificationChannel:
    """Base class for a notification destination"""

    name = "channel"

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def build_payload(self, event: NotificationEvent) -> Dict:
        raise NotImplementedError

    def deliver(self, payload: Dict) -> requests.Response:
        raise NotImplementedError

    def send(self, event: NotificationEvent) -> None:
        """Deliver ``event``; raises ChannelError on any failure"""
        try:
            response = self.deliver(self.build_payload(event))
        except requests.exceptions.RequestException as e:
            raise ChannelError(f"{self.name}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise ChannelError(
                f"{self.name}: HTTP {response.status_code} - {response.text[:200]}"
            )


def _changelog_lines(event: NotificationEvent) -> str:
    if not event.changelog:
        return "No changelog available"
    return "\n".join(f"• {entry.render()}" for entry in event.changelog)


class SlackChannel(NotificationChannel):
    """Slack incoming webhook"""

    name = "slack"

    def __init__(self, webhook_url: str, timeout: float = 5.0):
        super().__init__(timeout)
        self.webhook_url = webhook_url

    def build_payload(self, event: NotificationEvent) -> Dict:
        fields = [
            {"title": "Environment", "value": event.environment, "short": True},
            {"title": "Tag", "value": event.tag, "short": True},
            {"title": "Commit", "value": event.commit[:7], "short": True},
            {"title": "Status", "value": event.status, "short": True},
        ]
        if event.reason:
            fields.append({"title": "Reason", "value": event.reason, "short": False})

        attachment = {
            "color": f"#{_COLORS[event.kind]}",
            "title": event.title,
            "fields": fields,
            "text": _changelog_lines(event),
            "ts": int(time.time()),
        }
        if event.link:
            attachment["title_link"] = event.link

        return {"text": event.title, "attachments": [attachment]}

    def deliver(self, payload: Dict) -> requests.Response:
        return requests.post(self.webhook_url, json=payload, timeout=self.timeout)


class TeamsChannel(NotificationChannel):
    """Microsoft Teams incoming webhook (MessageCard)"""

    name = "teams"

    def __init__(self, webhook_url: str, timeout: float = 5.0):
        super().__init__(timeout)
        self.webhook_url = webhook_url

    def build_payload(self, event: NotificationEvent) -> Dict:
        facts = [
            {"name": "Environment", "value": event.environment},
            {"name": "Tag", "value": event.tag},
            {"name": "Commit", "value": event.commit[:7]},
            {"name": "Status", "value": event.status},
        ]
        if event.reason:
            facts.append({"name": "Reason", "value": event.reason})

        payload = {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "themeColor": _COLORS[event.kind],
            "summary": event.title,
            "sections": [{
                "activityTitle": event.title,
                "facts": facts,
                "text": _changelog_lines(event).replace("\n", "<br>"),
                "markdown": True,
            }],
        }
        if event.link:
            payload["potentialAction"] = [{
                "@type": "OpenUri",
                "name": "View details",
                "targets": [{"os": "default", "uri": event.link}],
            }]
        return payload

    def deliver(self, payload: Dict) -> requests.Response:
        return requests.post(self.webhook_url, json=payload, timeout=self.timeout)


class GrafanaAnnotationChannel(NotificationChannel):
    """Grafana annotation marking the deployment on dashboards"""

    name = "grafana"

    def __init__(self, grafana_url: str, api_key: str, timeout: float = 5.0):
        super().__init__(timeout)
        self.grafana_url = grafana_url.rstrip('/')
        self.api_key = api_key

    def build_payload(self, event: NotificationEvent) -> Dict:
        text = f"{event.title}: {event.tag} ({event.commit[:7]})"
        if event.reason:
            text += f" - {event.reason}"
        return {
            "time": int(time.time() * 1000),
            "tags": ["deployment", event.environment, event.kind.value],
            "text": text,
        }

    def deliver(self, payload: Dict) -> requests.Response:
        return requests.post(
            f"{self.grafana_url}/api/annotations",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout
        )


class NotificationDispatcher:
    """Fans a NotificationEvent out to every configured channel"""

    def __init__(self, channels: Optional[List[NotificationChannel]] = None):
        self.channels = list(channels or [])

    @classmethod
    def from_config(cls, cfg) -> 'NotificationDispatcher':
        channels: List[NotificationChannel] = []
        if cfg.slack_webhook_url:
            channels.append(SlackChannel(cfg.slack_webhook_url, cfg.notification_timeout))
        if cfg.teams_webhook_url:
            channels.append(TeamsChannel(cfg.teams_webhook_url, cfg.notification_timeout))
        if cfg.grafana_url and cfg.grafana_api_key:
            channels.append(GrafanaAnnotationChannel(
                cfg.grafana_url, cfg.grafana_api_key, cfg.notification_timeout
            ))
        if not channels:
            logger.warning("No notification channels configured - outcomes will only be logged")
        return cls(channels)

    @property
    def channel_names(self) -> List[str]:
        return [channel.name for channel in self.channels]

    def send(self, event: NotificationEvent) -> Dict[str, bool]:
        """
        Deliver to each destination channel independently.

        Errors are logged and swallowed. Returns a map of channel name to
        delivery success.
        """
        wanted = set(event.channels) if event.channels else None
        results: Dict[str, bool] = {}

        for channel in self.channels:
            if wanted is not None and channel.name not in wanted:
                continue
            try:
                channel.send(event)
                results[channel.name] = True
                logger.info(f"Sent {event.kind.value} notification via {channel.name}")
            except Exception as e:
                results[channel.name] = False
                logger.error(f"Notification via {channel.name} failed: {e}")

        audit_logger.log_event(
            action=AuditAction.NOTIFICATION_SENT,
            environment=event.environment,
            tag=event.tag,
            success=all(results.values()),
            details={"kind": event.kind.value, "channels": results}
        )
        return results
