from turnbuffer.config import settings
from turnbuffer.services.delivery_service import ChatwootDelivery, DeliveryChannel
from turnbuffer.services.generator import OpenAIResponseGenerator, ResponseGenerator


def get_generator() -> ResponseGenerator:
    return OpenAIResponseGenerator(
        api_key=settings.openai_api_key or "",
        default_model=settings.openai_model,
        timeout_seconds=settings.generator_timeout_seconds,
    )


def get_delivery() -> DeliveryChannel:
    return ChatwootDelivery(
        base_url=settings.chatwoot_base_url,
        api_token=settings.chatwoot_api_token,
        account_id=settings.chatwoot_account_id,
    )
