from turnbuffer.services.generator.base import (
    AggregatedContext,
    AttachmentInfo,
    MessageContext,
    ResponseGenerator,
)
from turnbuffer.services.generator.openai_generator import OpenAIResponseGenerator

__all__ = [
    "AggregatedContext",
    "AttachmentInfo",
    "MessageContext",
    "ResponseGenerator",
    "OpenAIResponseGenerator",
]
