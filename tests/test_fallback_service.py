from unittest.mock import Mock

from turnbuffer.schemas.inbound import InboundMessageEvent
from turnbuffer.services.fallback_service import build_message_context, process_single_message
from turnbuffer.services.result import Result


def _event(**overrides):
    data = {
        "external_message_id": "wamid-7",
        "conversation_id": "conv-7",
        "sender": {"id": "user-7"},
        "body": "  do you deliver?  ",
    }
    data.update(overrides)
    return InboundMessageEvent(**data)


class TestBuildMessageContext:
    def test_text_message(self):
        context = build_message_context(_event())
        assert context.text == "do you deliver?"
        assert context.kind == "text"
        assert context.sender == {"id": "user-7"}

    def test_image_attachment(self):
        context = build_message_context(
            _event(body=None, attachments=[{"content_type": "image/jpeg", "file_url": "https://cdn/p.jpg"}])
        )
        assert context.kind == "image"
        assert context.attachments[0].url == "https://cdn/p.jpg"


class TestProcessSingleMessage:
    def test_sends_reply(self, generator, delivery):
        result = process_single_message(_event(), generator=generator, delivery=delivery)

        assert result.ok is True
        assert result.responded is True
        assert result.intent == "greeting"
        delivery.send.assert_called_once_with("conv-7", "Thanks for your message.")

    def test_no_reply_needed(self, generator, delivery):
        generator.generate_single.return_value = {"should_respond": False, "confidence": 0.9, "intent": "thanks"}

        result = process_single_message(_event(), generator=generator, delivery=delivery)

        assert result.ok is True
        assert result.responded is False
        delivery.send.assert_not_called()

    def test_generator_error_is_reported_not_raised(self, delivery):
        generator = Mock()
        generator.generate_single.side_effect = RuntimeError("timeout")

        result = process_single_message(_event(), generator=generator, delivery=delivery)

        assert result.ok is False
        assert "timeout" in result.error
        delivery.send.assert_not_called()

    def test_malformed_decision(self, generator, delivery):
        generator.generate_single.return_value = {"raw": "not json"}

        result = process_single_message(_event(), generator=generator, delivery=delivery)

        assert result.ok is False
        assert result.error.startswith("invalid_decision")

    def test_delivery_failure(self, generator, delivery):
        delivery.send.return_value = Result.failure("Chatwoot API error: 500", "api_error")

        result = process_single_message(_event(), generator=generator, delivery=delivery)

        assert result.ok is False
        assert result.responded is False
        assert "500" in result.error

    def test_delivery_exception_is_reported_not_raised(self, generator, delivery):
        delivery.send.side_effect = RuntimeError("Invalid URL 'None/api/v1/conversations'")

        result = process_single_message(_event(), generator=generator, delivery=delivery)

        assert result.ok is False
        assert result.responded is False
        assert result.intent == "greeting"
        assert result.error.startswith("delivery_error")
