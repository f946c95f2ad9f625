"""
Escalation External Service Integrations
========================================

External services for the escalation engine:
- Slack webhook notifications
- YAML routing config file watcher
- APScheduler for periodic escalation runs
"""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import yaml
import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from shared.infrastructure.logging import get_logger
from config import settings
from core import ConfigurationException
from escalation.application import IEscalationConfigProvider, INotificationDispatcher
from escalation.domain import EscalationConfig, EscalationEvent, TATCalculator, Ticket

logger = get_logger(__name__)


class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for escalation config file changes."""

    def __init__(self, config_manager: "EscalationConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def _matches(self, event) -> bool:
        return not event.is_directory and Path(event.src_path).resolve() == self.config_path.resolve()

    def on_modified(self, event):
        if self._matches(event):
            logger.info("Escalation config file changed", extra={"path": event.src_path})
            self.config_manager.reload()

    def on_created(self, event):
        # Editors that save via rename produce a create, not a modify
        if self._matches(event):
            self.config_manager.reload()


class EscalationConfigManager(IEscalationConfigProvider):
    """
    Thread-safe escalation configuration manager with hot-reload support.

    Uses watchdog to monitor the routing YAML and swap in a new
    ``EscalationConfig`` without restarting. A reload that fails to parse
    keeps the previous configuration.
    """

    def __init__(self):
        self._config: Optional[EscalationConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> EscalationConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: If the file exists but is invalid
        """
        self._path = Path(path)
        config = self._load_from_file(self._path)
        with self._lock:
            self._config = config
        logger.info(
            "Escalation configuration loaded",
            extra={"path": str(self._path), "max_level": config.max_level, "rules": len(config.routing)}
        )
        return config

    def _load_from_file(self, path: Path) -> EscalationConfig:
        if not path.exists():
            logger.warning("Escalation config file not found, using defaults", extra={"path": str(path)})
            return EscalationConfig()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return EscalationConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as e:
            raise ConfigurationException(
                f"Invalid escalation config: {path}",
                {"error": str(e)}
            ) from e

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error("Failed to reload escalation config", extra={"error": e.details.get("error")})
            return False

        with self._lock:
            self._config = new_config
        logger.info("Escalation configuration reloaded successfully")
        return True

    def start_watching(self) -> None:
        """Start watching the configuration file (no-op if it does not exist)."""
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching config file", extra={"path": str(self._path)})
        except OSError as e:
            # inotify is unavailable in some containers
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> EscalationConfig:
        with self._lock:
            if self._config is None:
                raise RuntimeError("Escalation configuration not loaded")
            return self._config

    def get_config(self) -> EscalationConfig:
        return self.config


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class SlackNotifier(INotificationDispatcher):
    """
    Slack webhook notifier with circuit breaker and retry logic.

    Tells the new assignee (and any channels the routing rule names) that a
    ticket was escalated to them.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout: Optional[float] = None,
        ticket_url_template: Optional[str] = None,
        max_retries: int = 3,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout or settings.slack_timeout_seconds
        self._ticket_url_template = ticket_url_template or settings.ticket_url_template
        self._max_retries = max_retries
        self._circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def build_message(self, event: EscalationEvent) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        ticket_url = self._ticket_url_template.format(ticket_id=event.ticket_id)
        assignee = f"<@{event.assignee}>" if event.assignee else "_unassigned_"
        due = TATCalculator.format_deadline(event.resolution_due_at)

        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"\U0001F6A8 Ticket escalated to level {event.escalation_level}",
                    "emoji": True
                }
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*<{ticket_url}|#{event.ticket_id}>* {event.title}".rstrip()
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Assigned to:*\n{assignee}"},
                    {"type": "mrkdwn", "text": f"*Status:*\n{event.status.replace('_', ' ').title()}"},
                    {"type": "mrkdwn", "text": f"*Level:*\n{event.previous_level} → {event.escalation_level}"},
                    {"type": "mrkdwn", "text": f"*Due:*\n{due}"}
                ]
            },
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"Reason: {event.reason}"}]
            }
        ]

        return {
            "channel": event.channels[0] if event.channels else self._channel,
            "text": f"Ticket #{event.ticket_id} escalated to level {event.escalation_level}",
            "blocks": blocks
        }

    def build_reminder_message(self, ticket: Ticket) -> Dict[str, Any]:
        """Build the daily "due today" reminder for one ticket."""
        ticket_url = self._ticket_url_template.format(ticket_id=ticket.id)
        assignee = f"<@{ticket.assigned_to}>" if ticket.assigned_to else "_unassigned_"
        due = ticket.resolution_due_at.strftime("%H:%M UTC") if ticket.resolution_due_at else "today"

        return {
            "channel": self._channel,
            "text": f"Ticket #{ticket.id} is due today",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"⏰ *<{ticket_url}|#{ticket.id}>* {ticket.title}".rstrip()
                    }
                },
                {
                    "type": "context",
                    "elements": [
                        {"type": "mrkdwn", "text": f"Due today at {due} · Assigned to {assignee}"}
                    ]
                }
            ]
        }

    async def notify_escalation(self, event: EscalationEvent) -> bool:
        """
        Send the escalation to the Slack webhook.

        Returns:
            True if sent successfully, False otherwise
        """
        return await self._post(
            self.build_message(event),
            {"ticket_id": event.ticket_id, "escalation_level": event.escalation_level}
        )

    async def notify_tat_reminder(self, ticket: Ticket) -> bool:
        """Send a "due today" reminder to the Slack webhook."""
        return await self._post(
            self.build_reminder_message(ticket),
            {"ticket_id": ticket.id, "notification": "tat_reminder"}
        )

    async def _post(self, message: Dict[str, Any], context: Dict[str, Any]) -> bool:
        if not self._webhook_url:
            logger.debug("Slack webhook URL not configured, skipping notification")
            return False

        if not self._circuit_breaker.allow_request():
            logger.warning("Circuit breaker open, skipping Slack notification", extra=context)
            return False

        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(self._webhook_url, json=message)

                if response.status_code == 200:
                    self._circuit_breaker.record_success()
                    logger.info("Slack notification sent", extra=context)
                    return True

                logger.warning(
                    "Slack webhook returned non-200",
                    extra={"status_code": response.status_code, "attempt": attempt + 1, **context}
                )
            except httpx.HTTPError as e:
                logger.error(
                    "Slack notification failed",
                    extra={"error": str(e), "attempt": attempt + 1, **context}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(2 ** attempt)

        self._circuit_breaker.record_failure()
        return False

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class EscalationScheduler:
    """
    Wrapper for APScheduler running escalation passes in-process.

    Disabled when an external cron drives the HTTP trigger instead.
    """

    def __init__(self, interval_minutes: int = 30):
        self.interval_minutes = interval_minutes
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Escalation scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            job_func,
            "interval",
            minutes=self.interval_minutes,
            id="ticket_escalation",
            name="Ticket Escalation Job",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info("Escalation scheduler started", extra={"interval_minutes": self.interval_minutes})

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
