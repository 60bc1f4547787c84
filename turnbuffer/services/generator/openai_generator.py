import json
from dataclasses import asdict
from typing import Any, List, Optional
from uuid import UUID

import httpx

from turnbuffer.logging_config import get_logger
from turnbuffer.services.generator.base import AggregatedContext, MessageContext, ResponseGenerator

logger = get_logger("generator.openai")

SYSTEM_PROMPT = (
    "You answer WhatsApp customers. You receive either one message or a burst of messages "
    "the customer sent in a row. Reply with a JSON object with keys: should_respond (bool), "
    "content (string or null), confidence (0..1), intent (short snake_case label). "
    "Answer the whole burst in one reply; set should_respond to false when no reply is needed."
)


class OpenAIResponseGenerator(ResponseGenerator):
    """OpenAI chat-completions generator in JSON mode."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", timeout_seconds: float = 30.0):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"

    def generate(self, session_id: UUID, context: AggregatedContext) -> dict[str, Any]:
        payload = asdict(context)
        payload["session_id"] = str(session_id)
        user_content = (
            f"Customer sent {context.message_count} message(s) over "
            f"{context.time_span_seconds:.0f}s (urgency {context.urgency_score}/10).\n"
            f"Turn context:\n{json.dumps(payload, ensure_ascii=False, default=str)}"
        )
        return self._complete([
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ])

    def generate_single(self, context: MessageContext) -> dict[str, Any]:
        user_content = (
            "Customer sent a single message.\n"
            f"Message context:\n{json.dumps(asdict(context), ensure_ascii=False, default=str)}"
        )
        return self._complete([
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ])

    def _complete(self, messages: List[dict], model: Optional[str] = None) -> dict[str, Any]:
        model = model or self.default_model
        with httpx.Client(timeout=self.timeout_seconds) as client:
            payload = {
                "model": model,
                "messages": messages,
                "response_format": {"type": "json_object"},
            }
            logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

            if response.status_code != 200:
                logger.error(f"OpenAI error: {response.status_code} {response.text[:300]}")
                raise RuntimeError(f"OpenAI API error: {response.status_code} - {response.text[:300]}")

            data = response.json()

        content = ""
        if data.get("choices"):
            content = (data["choices"][0].get("message") or {}).get("content") or ""
        logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

        try:
            decision = json.loads(content)
        except json.JSONDecodeError:
            # Left for the caller to reject as a malformed decision.
            return {"raw": content}
        return decision if isinstance(decision, dict) else {"raw": decision}
