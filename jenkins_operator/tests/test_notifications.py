from __future__ import annotations

import base64
import queue
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from jenkins_operator.src.models import (
    InstanceRef,
    NotificationConfig,
    NotificationEvent,
    NotificationLevel,
    Phase,
    RestartReason,
    RestartSource,
)
from jenkins_operator.src.notifications import (
    MailgunProvider,
    NotificationDispatcher,
    SecretValueReader,
    SlackProvider,
    SMTPProvider,
    TeamsProvider,
    build_provider_factory,
)

INSTANCE = InstanceRef(name="example", namespace="ci", uid="uid-1")


def _event(level: NotificationLevel, *channels: NotificationConfig) -> NotificationEvent:
    return NotificationEvent(
        instance=INSTANCE,
        phase=Phase.BASE,
        level=level,
        reason=RestartReason(source=RestartSource.OPERATOR, messages=("Some plugins have changed",)),
        channels=channels,
    )


def _channel(level: NotificationLevel, kind: str | None = "slack", **settings) -> NotificationConfig:
    return NotificationConfig(name=f"{kind}-{level.value}", level=level, kind=kind, settings=settings)


class FakeProvider:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[NotificationEvent] = []
        self.error = error

    def send(self, event: NotificationEvent) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(event)


def _dispatcher(provider: FakeProvider | None):
    recorder = MagicMock()
    spawned: list = []

    def spawn(fn) -> None:
        spawned.append(fn)
        fn()

    dispatcher = NotificationDispatcher(recorder, lambda config: provider, spawn=spawn)
    return dispatcher, recorder, spawned


class TestDispatch:
    def test_info_event_skips_warning_channel(self) -> None:
        provider = FakeProvider()
        dispatcher, recorder, spawned = _dispatcher(provider)

        started = dispatcher.dispatch(_event(NotificationLevel.INFO, _channel(NotificationLevel.WARNING)))

        assert started == 0
        assert spawned == []
        assert provider.sent == []
        recorder.emit.assert_called_once()

    def test_info_event_reaches_info_channel(self) -> None:
        provider = FakeProvider()
        dispatcher, _, _ = _dispatcher(provider)

        started = dispatcher.dispatch(_event(NotificationLevel.INFO, _channel(NotificationLevel.INFO)))

        assert started == 1
        assert len(provider.sent) == 1

    def test_warning_event_reaches_every_channel(self) -> None:
        provider = FakeProvider()
        dispatcher, _, _ = _dispatcher(provider)

        started = dispatcher.dispatch(
            _event(
                NotificationLevel.WARNING,
                _channel(NotificationLevel.INFO),
                _channel(NotificationLevel.WARNING),
            )
        )

        assert started == 2

    def test_records_kubernetes_event(self) -> None:
        dispatcher, recorder, _ = _dispatcher(FakeProvider())

        dispatcher.dispatch(_event(NotificationLevel.WARNING))

        recorder.emit.assert_called_once_with(
            INSTANCE, "Warning", "OperatorRestart", "Some plugins have changed"
        )

    def test_unknown_provider_is_skipped(self) -> None:
        dispatcher, _, spawned = _dispatcher(None)

        started = dispatcher.dispatch(_event(NotificationLevel.WARNING, _channel(NotificationLevel.INFO, kind=None)))

        assert started == 0
        assert spawned == []

    def test_provider_failure_is_contained(self) -> None:
        dispatcher, _, _ = _dispatcher(FakeProvider(error=requests.ConnectionError("down")))

        assert dispatcher.dispatch(_event(NotificationLevel.WARNING, _channel(NotificationLevel.INFO))) == 1


def test_listener_drains_queue_until_stopped() -> None:
    provider = FakeProvider()
    dispatcher, _, _ = _dispatcher(provider)
    events: queue.Queue[NotificationEvent] = queue.Queue()
    stop = threading.Event()
    events.put(_event(NotificationLevel.WARNING, _channel(NotificationLevel.INFO)))

    thread = threading.Thread(target=dispatcher.listen, args=(events, stop, 0.05), daemon=True)
    thread.start()
    events.join()
    assert dispatcher.alive.is_set()
    stop.set()
    thread.join(timeout=2)

    assert len(provider.sent) == 1
    assert not dispatcher.alive.is_set()


def _core_with_secret(data: dict[str, str]) -> MagicMock:
    core = MagicMock()
    core.read_namespaced_secret.return_value = {
        "data": {key: base64.b64encode(value.encode()).decode() for key, value in data.items()}
    }
    return core


class TestProviders:
    def test_secret_value_reader_decodes_key(self) -> None:
        reader = SecretValueReader(_core_with_secret({"url": "https://hooks.example/abc\n"}))

        assert reader("ci", {"secret": {"name": "hooks"}, "key": "url"}) == "https://hooks.example/abc"

    def test_secret_value_reader_rejects_incomplete_selector(self) -> None:
        with pytest.raises(ValueError):
            SecretValueReader(MagicMock())("ci", {"key": "url"})

    def test_slack_posts_to_webhook_from_secret(self) -> None:
        session = MagicMock()
        selector = {"secret": {"name": "hooks"}, "key": "url"}
        config = _channel(NotificationLevel.INFO, webHookURLSecretKeySelector=selector)
        reader = SecretValueReader(_core_with_secret({"url": "https://hooks.example/abc"}))
        provider = SlackProvider(config, reader, session)

        provider.send(_event(NotificationLevel.WARNING))

        args, kwargs = session.post.call_args
        assert args == ("https://hooks.example/abc",)
        attachment = kwargs["json"]["attachments"][0]
        assert attachment["color"] == "danger"
        assert attachment["text"] == "Some plugins have changed"
        session.post.return_value.raise_for_status.assert_called_once()

    def test_teams_payload_is_message_card(self) -> None:
        provider = TeamsProvider(_channel(NotificationLevel.INFO, kind="teams"), MagicMock(), MagicMock())

        payload = provider.payload(_event(NotificationLevel.INFO))

        assert payload["@type"] == "MessageCard"
        assert {"name": "CR name", "value": "example"} in payload["sections"][0]["facts"]

    def test_mailgun_posts_form_with_api_key(self) -> None:
        session = MagicMock()
        config = _channel(
            NotificationLevel.INFO,
            kind="mailgun",
            domain="mg.example.com",
            recipient="ops@example.com",
            apiKeySecretKeySelector={"secret": {"name": "mailgun"}, "key": "api-key"},
            **{"from": "jenkins@mg.example.com"},
        )
        reader = SecretValueReader(_core_with_secret({"api-key": "key-123"}))
        provider = MailgunProvider(config, reader, session)

        provider.send(_event(NotificationLevel.WARNING))

        args, kwargs = session.post.call_args
        assert args == ("https://api.mailgun.net/v3/mg.example.com/messages",)
        assert kwargs["auth"] == ("api", "key-123")
        form = kwargs["data"]
        assert form["from"] == "jenkins@mg.example.com"
        assert form["to"] == "ops@example.com"
        assert form["subject"] == "Jenkins ci/example: operator restart"
        assert form["text"].endswith("Some plugins have changed")
        session.post.return_value.raise_for_status.assert_called_once()

    def test_smtp_logs_in_and_sends(self) -> None:
        smtp = MagicMock()
        smtp.__enter__.return_value = smtp
        smtp.has_extn.return_value = True
        factory = MagicMock(return_value=smtp)
        selector = {"secret": {"name": "mail"}, "key": "k"}
        config = _channel(
            NotificationLevel.INFO,
            kind="smtp",
            server="smtp.example",
            port=2525,
            to="ops@example.com",
            **{"from": "jenkins@example.com"},
            usernameSecretKeySelector=selector,
            passwordSecretKeySelector=selector,
        )
        provider = SMTPProvider(config, SecretValueReader(_core_with_secret({"k": "secret"})), smtp_factory=factory)

        provider.send(_event(NotificationLevel.WARNING))

        assert factory.call_args.args == ("smtp.example", 2525)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("secret", "secret")
        message = smtp.send_message.call_args.args[0]
        assert message["To"] == "ops@example.com"
        assert "Some plugins have changed" in message.get_content()


def test_provider_factory_maps_kinds() -> None:
    factory = build_provider_factory(MagicMock(), session=SimpleNamespace())

    assert isinstance(factory(_channel(NotificationLevel.INFO, kind="slack")), SlackProvider)
    assert isinstance(factory(_channel(NotificationLevel.INFO, kind="teams")), TeamsProvider)
    assert isinstance(factory(_channel(NotificationLevel.INFO, kind="mailgun")), MailgunProvider)
    assert isinstance(factory(_channel(NotificationLevel.INFO, kind="smtp")), SMTPProvider)
    assert factory(_channel(NotificationLevel.INFO, kind=None)) is None
