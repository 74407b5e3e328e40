import asyncio
import pytest
from unittest.mock import Mock

import httpx
from firebase_admin import exceptions as firebase_exceptions, messaging
from sqlalchemy.ext.asyncio import AsyncSession

from stable_automation.db.models import NotificationChannel, NotificationPreferences
from stable_automation.services.notifications.dispatcher import ChannelDispatcher
from stable_automation.services.notifications.registry import ChannelSenderRegistry
from stable_automation.services.notifications.senders import (
    ChannelSender,
    EmailSender,
    InAppSender,
    PushSender,
    TelegramSender,
)
from stable_automation.services.notifications.senders.email import render_html
from stable_automation.services.notifications.senders.push import build_message
from stable_automation.services.notifications.senders.telegram import format_message

PAYLOAD = {
    "title": "Feeding in 30 minutes",
    "body": "Morning feeding starts at 07:00",
    "data": {"action_url": "https://app.example.com/activities/1", "count": 2},
}


def _telegram_sender(handler) -> TelegramSender:
    return TelegramSender(
        bot_token="123:abc",
        base_url="https://telegram.test",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.unit
class TestChannelSenders:
    """Test transport outcome classification per channel."""

    @pytest.mark.asyncio
    async def test_in_app_is_noop_success(self):
        result = await InAppSender().send(None, PAYLOAD)

        assert result.success is True
        assert result.invalid_target is False

    @pytest.mark.asyncio
    async def test_telegram_success(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True, "result": {}})

        result = await _telegram_sender(handler).send("42", PAYLOAD)

        assert result.success is True
        assert requests[0].url.path == "/bot123:abc/sendMessage"
        assert b'"chat_id":"42"' in requests[0].content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_telegram_blocked_bot_is_invalid_target(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403,
                json={"ok": False, "description": "Forbidden: bot was blocked by the user"},
            )

        result = await _telegram_sender(handler).send("42", PAYLOAD)

        assert result.success is False
        assert result.invalid_target is True

    @pytest.mark.asyncio
    async def test_telegram_chat_not_found_is_invalid_target(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"ok": False, "description": "Bad Request: chat not found"}
            )

        result = await _telegram_sender(handler).send("42", PAYLOAD)

        assert result.invalid_target is True

    @pytest.mark.asyncio
    async def test_telegram_server_error_is_retryable_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        result = await _telegram_sender(handler).send("42", PAYLOAD)

        assert result.success is False
        assert result.invalid_target is False
        assert "502" in result.error

    @pytest.mark.asyncio
    async def test_telegram_without_chat_id(self):
        result = await _telegram_sender(lambda r: httpx.Response(200)).send(
            None, PAYLOAD
        )

        assert result.success is False
        assert result.error == "Telegram chat ID not available or not verified"

    def test_telegram_message_format(self):
        text = format_message(PAYLOAD)

        assert text.startswith("Feeding in 30 minutes\n\nMorning feeding")
        assert text.endswith("https://app.example.com/activities/1")

    @pytest.mark.asyncio
    async def test_push_success(self):
        send_fn = Mock(return_value="projects/demo/messages/1")

        result = await PushSender(send_fn=send_fn).send("token-1", PAYLOAD)

        assert result.success is True
        message = send_fn.call_args.args[0]
        assert message.token == "token-1"
        assert message.data == {
            "action_url": "https://app.example.com/activities/1",
            "count": "2",
        }

    @pytest.mark.asyncio
    async def test_push_unregistered_token_is_invalid_target(self):
        send_fn = Mock(
            side_effect=messaging.UnregisteredError("Requested entity was not found.")
        )

        result = await PushSender(send_fn=send_fn).send("token-1", PAYLOAD)

        assert result.success is False
        assert result.invalid_target is True

    @pytest.mark.asyncio
    async def test_push_invalid_registration_token_is_invalid_target(self):
        send_fn = Mock(
            side_effect=firebase_exceptions.InvalidArgumentError(
                "The registration token is not a valid FCM registration token"
            )
        )

        result = await PushSender(send_fn=send_fn).send("token-1", PAYLOAD)

        assert result.invalid_target is True

    @pytest.mark.asyncio
    async def test_push_unavailable_is_retryable_failure(self):
        send_fn = Mock(
            side_effect=firebase_exceptions.UnavailableError("Service unavailable")
        )

        result = await PushSender(send_fn=send_fn).send("token-1", PAYLOAD)

        assert result.success is False
        assert result.invalid_target is False

    @pytest.mark.asyncio
    async def test_push_without_token(self):
        result = await PushSender(send_fn=Mock()).send(None, PAYLOAD)

        assert result.error == "No FCM token available"

    def test_push_message_has_string_data(self):
        message = build_message("t", {"title": "T", "body": "B", "data": {"n": 1}})

        assert message.data == {"n": "1"}
        assert message.notification.title == "T"

    @pytest.mark.asyncio
    async def test_email_success(self):
        client = Mock()
        client.send.return_value = Mock(status_code=202)

        result = await EmailSender(client=client).send("rider@example.com", PAYLOAD)

        assert result.success is True
        assert client.send.call_count == 1

    @pytest.mark.asyncio
    async def test_email_gateway_error(self):
        client = Mock()
        client.send.return_value = Mock(status_code=500)

        result = await EmailSender(client=client).send("rider@example.com", PAYLOAD)

        assert result.success is False
        assert result.invalid_target is False

    @pytest.mark.asyncio
    async def test_email_without_address(self):
        result = await EmailSender(client=Mock()).send(None, PAYLOAD)

        assert result.error == "User email not found"

    def test_email_html_escapes_body_and_filters_links(self):
        html = render_html("<b>Hay</b>\nline two", "javascript:alert(1)")

        assert "&lt;b&gt;Hay&lt;/b&gt;<br>" in html
        assert "javascript" not in html
        assert 'href="https://x.test/a?b=1&amp;c=2"' in render_html(
            "Hi", "https://x.test/a?b=1&c=2"
        )


@pytest.mark.unit
class TestChannelSenderRegistry:
    """Test channel to sender mapping."""

    def test_default_channels(self):
        assert set(ChannelSenderRegistry.list_registered_channels()) >= {
            "email",
            "push",
            "telegram",
            "inApp",
        }
        assert isinstance(ChannelSenderRegistry.create_sender("inApp"), InAppSender)

    def test_unknown_channel(self):
        assert ChannelSenderRegistry.create_sender("sms") is None
        assert ChannelSenderRegistry.is_registered("sms") is False

    def test_register_custom_factory(self, registered_sender):
        sender = registered_sender("sms")

        assert ChannelSenderRegistry.is_registered("sms") is True
        assert ChannelSenderRegistry.create_sender("sms") is sender


class SlowSender(ChannelSender):
    channel = "push"

    async def _deliver(self, target, payload):
        await asyncio.sleep(5)


@pytest.mark.integration
class TestChannelDispatcher:
    """Test target resolution, timeouts and invalid target pruning."""

    @pytest.mark.asyncio
    async def test_invalid_push_token_prunes_only_that_token(
        self,
        db_session: AsyncSession,
        create_user,
        create_queue_item,
        recording_sender,
    ):
        user = await create_user(
            fcm_tokens=[
                {"token": "dead-token", "device_id": "phone", "platform": "ios"},
                {"token": "live-token", "device_id": "tablet", "platform": "android"},
            ]
        )
        item = await create_queue_item(
            NotificationChannel.PUSH, user_id=user.id, fcm_token="dead-token"
        )
        sender = recording_sender("push", outcome="invalid")
        dispatcher = ChannelDispatcher(senders={"push": sender})

        result = await dispatcher.dispatch(db_session, item)

        assert result.invalid_target is True
        assert sender.calls[0][0] == "dead-token"

        preferences = await db_session.get(NotificationPreferences, user.id)
        await db_session.refresh(preferences)
        assert preferences.fcm_tokens == [
            {"token": "live-token", "device_id": "tablet", "platform": "android"}
        ]

    @pytest.mark.asyncio
    async def test_invalid_telegram_chat_is_cleared(
        self,
        db_session: AsyncSession,
        create_user,
        create_queue_item,
        recording_sender,
    ):
        user = await create_user(
            telegram_enabled=True, telegram_chat_id="42", telegram_verified=True
        )
        item = await create_queue_item(
            NotificationChannel.TELEGRAM, user_id=user.id, telegram_chat_id="42"
        )
        dispatcher = ChannelDispatcher(
            senders={"telegram": recording_sender("telegram", outcome="invalid")}
        )

        await dispatcher.dispatch(db_session, item)

        preferences = await db_session.get(NotificationPreferences, user.id)
        await db_session.refresh(preferences)
        assert preferences.telegram_chat_id is None
        assert preferences.telegram_verified is False

    @pytest.mark.asyncio
    async def test_transport_error_does_not_prune(
        self,
        db_session: AsyncSession,
        create_user,
        create_queue_item,
        recording_sender,
    ):
        user = await create_user(fcm_tokens=[{"token": "t1"}])
        item = await create_queue_item(
            NotificationChannel.PUSH, user_id=user.id, fcm_token="t1"
        )
        dispatcher = ChannelDispatcher(
            senders={"push": recording_sender("push", outcome="error")}
        )

        result = await dispatcher.dispatch(db_session, item)

        assert result.success is False
        assert result.error == "Gateway unavailable"
        preferences = await db_session.get(NotificationPreferences, user.id)
        assert preferences.fcm_tokens == [{"token": "t1"}]

    @pytest.mark.asyncio
    async def test_target_resolved_from_preferences_when_not_denormalized(
        self,
        db_session: AsyncSession,
        create_user,
        create_queue_item,
        recording_sender,
    ):
        user = await create_user(
            email="user@example.com",
            email_address="override@example.com",
            fcm_tokens=[{"token": "first"}, {"token": "second"}],
            telegram_chat_id="99",
            telegram_verified=False,
        )
        email_sender = recording_sender("email")
        push_sender = recording_sender("push")
        telegram_sender = recording_sender("telegram")
        dispatcher = ChannelDispatcher(
            senders={
                "email": email_sender,
                "push": push_sender,
                "telegram": telegram_sender,
            }
        )

        for channel in (
            NotificationChannel.EMAIL,
            NotificationChannel.PUSH,
            NotificationChannel.TELEGRAM,
        ):
            item = await create_queue_item(channel, user_id=user.id)
            await dispatcher.dispatch(db_session, item)

        assert email_sender.calls[0][0] == "override@example.com"
        assert push_sender.calls[0][0] == "first"
        # Unverified chats are never targeted
        assert telegram_sender.calls[0][0] is None

    @pytest.mark.asyncio
    async def test_email_falls_back_to_user_address(
        self,
        db_session: AsyncSession,
        create_user,
        create_queue_item,
        recording_sender,
    ):
        user = await create_user(email="user@example.com")
        item = await create_queue_item(NotificationChannel.EMAIL, user_id=user.id)
        sender = recording_sender("email")

        await ChannelDispatcher(senders={"email": sender}).dispatch(db_session, item)

        assert sender.calls[0][0] == "user@example.com"

    @pytest.mark.asyncio
    async def test_sender_resolved_from_registry(
        self,
        db_session: AsyncSession,
        create_user,
        create_queue_item,
        registered_sender,
    ):
        user = await create_user(email="user@example.com")
        item = await create_queue_item(NotificationChannel.EMAIL, user_id=user.id)
        sender = registered_sender("email")

        result = await ChannelDispatcher().dispatch(db_session, item)

        assert result.success is True
        assert sender.calls[0][0] == "user@example.com"

    @pytest.mark.asyncio
    async def test_stuck_send_times_out(
        self, db_session: AsyncSession, create_queue_item
    ):
        item = await create_queue_item(NotificationChannel.PUSH, fcm_token="t1")
        dispatcher = ChannelDispatcher(
            senders={"push": SlowSender()}, timeout_seconds=0.05
        )

        result = await dispatcher.dispatch(db_session, item)

        assert result.success is False
        assert "timed out" in result.error
