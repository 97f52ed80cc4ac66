"""
Automated reply generation.

The ingestion pipeline calls a reply generator for every inbound message.
Two generators are provided:

- RuleBasedReplyGenerator: a courtesy acknowledgement, used when no
  OpenAI API key is configured
- OpenAIReplyGenerator: a chat completion grounded on the business
  configuration and the recent conversation
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from openai import AsyncOpenAI, OpenAIError

from relay.config import Settings
from relay.models import Direction, Message, TenantConfig

logger = logging.getLogger(__name__)

# Number of context messages quoted in the prompt
PROMPT_HISTORY = 5

INTENT_KEYWORDS = (
    ("pricing_inquiry", ("price", "cost", "$")),
    ("hours_inquiry", ("hours", "open", "closed")),
    ("location_inquiry", ("location", "address", "where")),
    ("greeting", ("hello", "hi", "hey")),
    ("support_request", ("help", "support", "problem")),
)


class ReplyGenerationError(RuntimeError):
    """Raised when the model returns no usable reply."""


@dataclass(frozen=True)
class ReplyRequest:
    content: str
    content_type: str
    tenant: TenantConfig
    context: Sequence[Message]
    counterparty: str


@dataclass(frozen=True)
class ReplyResult:
    message: str
    should_respond: bool
    confidence: float
    intent: Optional[str] = None


class ReplyGenerator(Protocol):
    async def generate(self, request: ReplyRequest) -> ReplyResult: ...


def detect_intent(content: str) -> str:
    """Classify a message by keyword. Advisory only."""
    lowered = content.lower()
    for intent, keywords in INTENT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return intent
    return "general_inquiry"


def should_respond_to(content: str, content_type: str) -> bool:
    """Only text messages of at least 3 characters get a generated reply."""
    if content_type != "text":
        return False
    return len(content) >= 3


class RuleBasedReplyGenerator:
    async def generate(self, request: ReplyRequest) -> ReplyResult:
        return ReplyResult(
            message="Thank you for your message! We'll get back to you soon.",
            should_respond=True,
            confidence=0.5,
            intent=detect_intent(request.content),
        )


class OpenAIReplyGenerator:
    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self.client = client
        self.model = model

    async def generate(self, request: ReplyRequest) -> ReplyResult:
        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": build_system_prompt(request.tenant)},
                    {"role": "user", "content": build_user_prompt(request)},
                ],
                max_tokens=500,
                temperature=0.7,
            )
            reply = (completion.choices[0].message.content or "").strip() if completion.choices else ""
            if not reply:
                raise ReplyGenerationError("No response generated")
        except (OpenAIError, ReplyGenerationError) as e:
            logger.error(f"Error generating AI response for {request.counterparty}: {e}")
            return ReplyResult(
                message=(
                    f"Hello! Thank you for contacting {request.tenant.name}. "
                    "We'll assist you shortly."
                ),
                should_respond=True,
                confidence=0.3,
            )

        return ReplyResult(
            message=reply,
            should_respond=should_respond_to(request.content, request.content_type),
            confidence=0.8,
            intent=detect_intent(request.content),
        )


def build_system_prompt(tenant: TenantConfig) -> str:
    return f"""You are an AI assistant for {tenant.name}, a {tenant.industry} business.

Business Information:
- Name: {tenant.name}
- Industry: {tenant.industry}
- Description: {tenant.description or 'No description provided'}
- Business Hours: {tenant.business_hours or 'Not specified'}

Instructions:
- Respond as a helpful customer service representative
- Keep responses concise and professional
- Use the business information to provide relevant assistance
- If you can't help with something, politely direct them to human support
- Respond in the same language as the customer
- Don't make promises about pricing or availability without explicit information

{tenant.ai_instructions or ''}""".strip()


def build_user_prompt(request: ReplyRequest) -> str:
    lines = [
        f'Customer message: "{request.content}"',
        f"Message type: {request.content_type}",
        f"Customer phone: {request.counterparty}",
        "",
    ]
    history = list(request.context)[-PROMPT_HISTORY:]
    if history:
        lines.append("Recent conversation history:")
        for message in history:
            speaker = "Customer" if message.direction is Direction.INBOUND else "Assistant"
            lines.append(f"{speaker}: {message.content}")
        lines.append("")
    lines.append("Provide a helpful response to the customer:")
    return "\n".join(lines)


def build_reply_generator(settings: Settings) -> ReplyGenerator:
    """Use OpenAI when an API key is configured, rule-based replies otherwise."""
    if settings.OPENAI_API_KEY:
        logger.info(f"OpenAI reply generator enabled (model={settings.OPENAI_MODEL})")
        return OpenAIReplyGenerator(AsyncOpenAI(api_key=settings.OPENAI_API_KEY), settings.OPENAI_MODEL)
    logger.warning("OPENAI_API_KEY not set, using rule-based replies")
    return RuleBasedReplyGenerator()
