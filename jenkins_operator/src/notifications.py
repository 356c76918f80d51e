from __future__ import annotations

import base64
import logging
import queue
import smtplib
import ssl
import threading
from collections.abc import Callable, Mapping
from email.message import EmailMessage
from typing import Any, Protocol

import requests
from kubernetes.client import CoreV1Api

from jenkins_operator.src.kube import EventRecorder, to_dict
from jenkins_operator.src.metrics import METRICS
from jenkins_operator.src.models import NotificationConfig, NotificationEvent, NotificationLevel

LOGGER = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10


class Provider(Protocol):
    def send(self, event: NotificationEvent) -> None: ...


ProviderFactory = Callable[[NotificationConfig], "Provider | None"]


def event_type(level: NotificationLevel) -> str:
    return "Warning" if level is NotificationLevel.WARNING else "Normal"


def event_title(event: NotificationEvent) -> str:
    return f"Jenkins {event.instance.namespace}/{event.instance.name}: {event.reason.source.value} restart"


def event_facts(event: NotificationEvent) -> list[tuple[str, str]]:
    return [
        ("CR name", event.instance.name),
        ("Namespace", event.instance.namespace),
        ("Phase", event.phase.value),
        ("Level", event.level.value),
        ("Source", event.reason.source.value),
    ]


def _spawn_daemon(target: Callable[[], None]) -> None:
    threading.Thread(target=target, name="notification-send", daemon=True).start()


class SecretValueReader:
    """Resolves ``{"secret": {"name": ...}, "key": ...}`` selectors from notification settings."""

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def __call__(self, namespace: str, selector: Mapping[str, Any] | None) -> str:
        selector = selector or {}
        name = (selector.get("secret") or {}).get("name")
        key = selector.get("key")
        if not name or not key:
            raise ValueError(f"incomplete secret key selector: {dict(selector)!r}")
        secret = self.core_api.read_namespaced_secret(name=name, namespace=namespace)
        raw = (to_dict(secret).get("data") or {}).get(key)
        if raw is None:
            raise ValueError(f"secret {namespace}/{name} has no key {key!r}")
        return base64.b64decode(raw).decode("utf-8").strip()


class SlackProvider:
    def __init__(
        self,
        config: NotificationConfig,
        secret_value: SecretValueReader,
        session: requests.Session,
    ) -> None:
        self.config = config
        self.secret_value = secret_value
        self.session = session

    def payload(self, event: NotificationEvent) -> dict[str, Any]:
        return {
            "attachments": [
                {
                    "fallback": event_title(event),
                    "color": "danger" if event.level is NotificationLevel.WARNING else "good",
                    "title": event_title(event),
                    "text": "\n".join(event.reason.short()),
                    "fields": [
                        {"title": title, "value": value, "short": True}
                        for title, value in event_facts(event)
                    ],
                }
            ]
        }

    def send(self, event: NotificationEvent) -> None:
        url = self.secret_value(
            event.instance.namespace, self.config.settings.get("webHookURLSecretKeySelector")
        )
        response = self.session.post(url, json=self.payload(event), timeout=_TIMEOUT_SECONDS)
        response.raise_for_status()


class TeamsProvider(SlackProvider):
    def payload(self, event: NotificationEvent) -> dict[str, Any]:
        return {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "themeColor": "d32f2f" if event.level is NotificationLevel.WARNING else "2e7d32",
            "title": event_title(event),
            "summary": event_title(event),
            "sections": [
                {
                    "facts": [{"name": name, "value": value} for name, value in event_facts(event)],
                    "text": "<br>".join(event.reason.short()),
                }
            ],
        }


class MailgunProvider:
    def __init__(
        self,
        config: NotificationConfig,
        secret_value: SecretValueReader,
        session: requests.Session,
    ) -> None:
        self.config = config
        self.secret_value = secret_value
        self.session = session

    def send(self, event: NotificationEvent) -> None:
        settings = self.config.settings
        api_key = self.secret_value(
            event.instance.namespace, settings.get("apiKeySecretKeySelector")
        )
        response = self.session.post(
            f"https://api.mailgun.net/v3/{settings['domain']}/messages",
            auth=("api", api_key),
            data={
                "from": settings["from"],
                "to": settings["recipient"],
                "subject": event_title(event),
                "text": _plain_body(event),
            },
            timeout=_TIMEOUT_SECONDS,
        )
        response.raise_for_status()


def _plain_body(event: NotificationEvent) -> str:
    lines = [f"{title}: {value}" for title, value in event_facts(event)]
    lines.append("")
    lines.extend(event.reason.short())
    return "\n".join(lines)


class SMTPProvider:
    def __init__(
        self,
        config: NotificationConfig,
        secret_value: SecretValueReader,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.config = config
        self.secret_value = secret_value
        self.smtp_factory = smtp_factory

    def message(self, event: NotificationEvent) -> EmailMessage:
        settings = self.config.settings
        msg = EmailMessage()
        msg["Subject"] = event_title(event)
        msg["From"] = settings["from"]
        msg["To"] = settings["to"]
        msg.set_content(_plain_body(event))
        return msg

    def send(self, event: NotificationEvent) -> None:
        settings = self.config.settings
        namespace = event.instance.namespace
        user = self.secret_value(namespace, settings.get("usernameSecretKeySelector"))
        password = self.secret_value(namespace, settings.get("passwordSecretKeySelector"))

        context = ssl.create_default_context()
        if settings.get("tlsInsecureSkipVerify"):
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        with self.smtp_factory(settings["server"], int(settings.get("port", 587)), timeout=_TIMEOUT_SECONDS) as smtp:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls(context=context)
                smtp.ehlo()
            smtp.login(user, password)
            smtp.send_message(self.message(event))


def build_provider_factory(
    core_api: CoreV1Api, session: requests.Session | None = None
) -> ProviderFactory:
    """Return a factory mapping a channel config to its provider, or ``None`` if unsupported."""
    secret_value = SecretValueReader(core_api)
    http = session or requests.Session()

    def factory(config: NotificationConfig) -> Provider | None:
        if config.kind == "slack":
            return SlackProvider(config, secret_value, http)
        if config.kind == "teams":
            return TeamsProvider(config, secret_value, http)
        if config.kind == "mailgun":
            return MailgunProvider(config, secret_value, http)
        if config.kind == "smtp":
            return SMTPProvider(config, secret_value)
        return None

    return factory


class NotificationDispatcher:
    """Fans restart notifications out to Kubernetes events and the configured channels.

    Every event is recorded as a Kubernetes ``Event`` on the Jenkins resource.
    Each channel then gets its own fire-and-forget delivery thread; delivery
    failures are logged and counted but never reach the reconcile loop.
    """

    def __init__(
        self,
        recorder: EventRecorder,
        provider_factory: ProviderFactory,
        spawn: Callable[[Callable[[], None]], None] = _spawn_daemon,
    ) -> None:
        self.recorder = recorder
        self.provider_factory = provider_factory
        self.spawn = spawn
        self.alive = threading.Event()

    def listen(
        self,
        events: queue.Queue[NotificationEvent],
        stop_event: threading.Event,
        poll_seconds: float = 0.5,
    ) -> None:
        self.alive.set()
        try:
            while not stop_event.is_set():
                try:
                    event = events.get(timeout=poll_seconds)
                except queue.Empty:
                    continue
                try:
                    self.dispatch(event)
                except Exception:
                    LOGGER.exception("Failed to dispatch notification (cr=%s)", event.instance.name)
                finally:
                    events.task_done()
        finally:
            self.alive.clear()

    def dispatch(self, event: NotificationEvent) -> int:
        """Handle one event and return the number of channel deliveries started."""
        if not event.reason.has_messages():
            LOGGER.warning("Reason has no messages, skipping notification (cr=%s)", event.instance.name)
            return 0

        self.recorder.emit(
            event.instance,
            event_type(event.level),
            f"{event.reason.source.value.capitalize()}Restart",
            "; ".join(event.reason.short()),
        )

        started = 0
        for config in event.channels:
            provider = self.provider_factory(config)
            if provider is None:
                LOGGER.warning(
                    "Unknown notification service in %r (cr=%s)", config.name, event.instance.name
                )
                continue
            if event.level is NotificationLevel.INFO and config.level is NotificationLevel.WARNING:
                continue
            self.spawn(lambda provider=provider, config=config: self._send(provider, config, event))
            started += 1
        return started

    @staticmethod
    def _send(provider: Provider, config: NotificationConfig, event: NotificationEvent) -> None:
        try:
            provider.send(event)
        except Exception as exc:
            LOGGER.error(
                "Failed to send notification '%s' (cr=%s): %s", config.name, event.instance.name, exc
            )
            METRICS.notifications_total.labels(kind=config.kind or "unknown", outcome="failure").inc()
            return
        METRICS.notifications_total.labels(kind=config.kind or "unknown", outcome="success").inc()
