"""
AI Service — Drafts replies to store reviews.
Supports any OpenAI-compatible endpoint (OpenAI, OpenRouter) and Anthropic Claude.
The output is treated as plain text and cut to the store's reply limit.
"""

import logging
import time
from typing import Optional
from openai import AsyncOpenAI
from anthropic import AsyncAnthropic
from review_responder.config import Settings, get_settings
from review_responder.models import VendorKind
from review_responder.utils import truncate_response

logger = logging.getLogger(__name__)

STORE_DISPLAY_NAMES = {
    VendorKind.APP_STORE.value: "App Store",
    VendorKind.PLAY_STORE.value: "Google Play Store",
}

REFINE_SYSTEM_PROMPT = (
    "You are editing a customer support response. Revise the response based on the "
    "feedback while keeping it professional and within {max_length} characters."
)


class DraftingService:
    """Multi-provider reply drafting (OpenAI-compatible or Anthropic)."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        openai_client: Optional[AsyncOpenAI] = None,
        anthropic_client: Optional[AsyncAnthropic] = None,
    ):
        self.settings = settings or get_settings()
        self.provider = self.settings.ai_provider.strip().lower()
        self._openai_client = openai_client
        self._anthropic_client = anthropic_client

        if self.provider == "openai":
            self.model = self.settings.openai_model
            if self._openai_client is None:
                if not self.settings.openai_api_key:
                    raise ValueError("OPENAI_API_KEY not configured. Set OPENAI_API_KEY env.")
                self._openai_client = AsyncOpenAI(
                    api_key=self.settings.openai_api_key,
                    base_url=self.settings.openai_base_url or None,
                )
        elif self.provider == "anthropic":
            self.model = self.settings.anthropic_model
            if self._anthropic_client is None:
                if not self.settings.anthropic_api_key:
                    raise ValueError("ANTHROPIC_API_KEY not configured. Set ANTHROPIC_API_KEY env.")
                self._anthropic_client = AsyncAnthropic(api_key=self.settings.anthropic_api_key)
        else:
            raise ValueError(f"Unknown AI provider: {self.provider}")

    async def _completion(
        self,
        messages: list[dict],
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        """Call the configured provider's completion API."""
        if self.provider == "openai":
            response = await self._openai_client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return (response.choices[0].message.content or "").strip()

        # Anthropic takes the system prompt separately
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system" and m.get("content"))
        response = await self._anthropic_client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[m for m in messages if m["role"] != "system"],
        )
        if response.content and response.content[0].type == "text":
            return response.content[0].text.strip()
        return ""

    async def generate_response(
        self,
        resource_name: str,
        store: str,
        rating: int,
        body: str,
        max_length: int,
        title: Optional[str] = None,
        reviewer_name: Optional[str] = None,
        custom_instructions: Optional[str] = None,
    ) -> str:
        """Draft a reply to one review, cut to max_length."""
        messages = [
            {"role": "system", "content": self._build_system_prompt(resource_name, store, max_length, custom_instructions)},
            {"role": "user", "content": self._build_user_prompt(rating, title, body, reviewer_name)},
        ]
        started = time.monotonic()
        try:
            text = await self._completion(messages, temperature=0.7, max_tokens=500)
        except Exception as e:
            logger.error(f"AI draft generation failed: {e}")
            raise
        logger.debug(
            f"Draft for {resource_name} ({rating}★) generated by {self.provider}/{self.model} "
            f"in {int((time.monotonic() - started) * 1000)}ms, {len(text)} chars"
        )

        fitted = truncate_response(text, max_length)
        if fitted != text:
            logger.debug(f"Draft truncated from {len(text)} to {len(fitted)} chars (limit {max_length})")
        return fitted

    async def refine_response(self, original: str, feedback: str, max_length: int = 350) -> str:
        """Rewrite an existing draft following the owner's feedback."""
        messages = [
            {"role": "system", "content": REFINE_SYSTEM_PROMPT.format(max_length=max_length)},
            {
                "role": "user",
                "content": f"Original response:\n{original}\n\nFeedback: {feedback}\n\nPlease provide the revised response:",
            },
        ]
        try:
            refined = await self._completion(messages, temperature=0.5, max_tokens=400)
        except Exception as e:
            logger.error(f"AI draft refinement failed: {e}")
            raise
        return truncate_response(refined or original, max_length)

    def _build_system_prompt(
        self,
        resource_name: str,
        store: str,
        max_length: int,
        custom_instructions: Optional[str] = None,
    ) -> str:
        base = self.settings.system_prompt.replace("${maxLength}", str(max_length))
        prompt = (
            f"{base}\n\nContext:\n"
            f"- App: \"{resource_name}\"\n"
            f"- Store: {STORE_DISPLAY_NAMES.get(store, store)}"
        )
        if custom_instructions and custom_instructions.strip():
            prompt += f"\n\nADDITIONAL INSTRUCTIONS FROM THE APP OWNER:\n{custom_instructions.strip()}"
        return prompt

    @staticmethod
    def _build_user_prompt(
        rating: int,
        title: Optional[str],
        body: str,
        reviewer_name: Optional[str] = None,
    ) -> str:
        lines = [f"Please generate a response to the following {rating}-star review:", ""]
        if reviewer_name:
            lines.append(f"Reviewer: {reviewer_name}")
        lines.append(f"Rating: {'⭐' * rating}")
        if title:
            lines.append(f"Title: {title}")
        lines.append(f"Review: {body}")
        return "\n".join(lines)


def create_drafting_service(settings: Optional[Settings] = None) -> DraftingService:
    """Factory function to create a drafting service from configured keys."""
    return DraftingService(settings=settings)
