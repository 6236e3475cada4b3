"""
Metered OpenAI client wrapper.

Bills each chat completion to a user's points balance without modifying the
response.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.pipeline import BillingOutcome, BillingPipeline
from ..core.token_counter import UsageReport


def _message_text(messages: List[Dict[str, Any]]) -> str:
    parts = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            parts.append(content)
        elif isinstance(content, list):
            parts.extend(
                part.get("text", "") for part in content
                if isinstance(part, dict) and part.get("type") == "text"
            )
    return "\n".join(parts)


def _reply_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    parts = []
    for choice in choices:
        message = getattr(choice, "message", None)
        content = getattr(message, "content", None)
        if isinstance(content, str):
            parts.append(content)
    return "\n".join(parts)


class MeteredOpenAI:
    """OpenAI client wrapper that bills usage to a user's balance.

    Usage reported by the API is trusted as-is. When a response carries no
    usage, the prompt and reply text are used for estimation. Billing
    failures are loud: the response is never returned for a call that could
    not be billed.
    """

    def __init__(
        self,
        model: str,
        user_id: str,
        pipeline: BillingPipeline,
        client: Optional[OpenAI] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            model: OpenAI model name (required)
            user_id: User to bill (required)
            pipeline: Billing pipeline to charge through
            client: Optional preconfigured OpenAI client

        Raises:
            ValueError: If model or user_id is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

        self.model = model
        self.user_id = user_id
        self.pipeline = pipeline
        self.client = client or OpenAI()
        self.last_outcome: Optional[BillingOutcome] = None

    def chat(
        self,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        conversation_id: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion and bill its usage.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            conversation_id: Conversation identifier for the audit trail
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
            BillingError: If the usage could not be billed
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = getattr(response, "usage", None)
        if usage is not None:
            report = UsageReport(
                model_name=self.model,
                input_units=usage.prompt_tokens,
                output_units=usage.completion_tokens,
                total_units=usage.total_tokens,
            )
        else:
            excerpt = "\n".join(
                text for text in (_message_text(messages), _reply_text(response)) if text
            )
            report = UsageReport(model_name=self.model, source_text_excerpt=excerpt)

        self.last_outcome = self.pipeline.process(
            self.user_id,
            report,
            request_id=getattr(response, "id", None),
            conversation_id=conversation_id,
        )
        return response
