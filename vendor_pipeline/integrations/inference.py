import logging
from typing import Dict, List, Protocol

import anthropic
import openai
from pydantic import BaseModel

from vendor_pipeline.core.exceptions import CollaboratorUnavailableError

logger = logging.getLogger(__name__)

JSON_ONLY_SUFFIX = "\n\nRespond with a single JSON object and nothing else."


class InferenceResult(BaseModel):
    text: str
    tokens_used: int = 0


class InferenceProvider(Protocol):
    async def respond(
        self, history: List[Dict[str, str]], system_prompt: str, json_mode: bool = True
    ) -> InferenceResult: ...


def _merge_consecutive_roles(history: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """Anthropic requires alternating roles starting with ``user``."""
    merged: List[Dict[str, str]] = []
    for turn in history:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1] = {
                "role": turn["role"],
                "content": merged[-1]["content"] + "\n" + turn["content"],
            }
        else:
            merged.append(dict(turn))
    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": "(conversation start)"})
    return merged


class AnthropicProvider:
    def __init__(self, api_key: str, model: str, max_tokens: int, timeout: float) -> None:
        self.client = anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    async def respond(
        self, history: List[Dict[str, str]], system_prompt: str, json_mode: bool = True
    ) -> InferenceResult:
        system = system_prompt + JSON_ONLY_SUFFIX if json_mode else system_prompt
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=_merge_consecutive_roles(history),
            )
        except anthropic.APIError as exc:
            logger.error("Anthropic request failed: %s", exc)
            raise CollaboratorUnavailableError("Inference provider unavailable")

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = response.usage
        return InferenceResult(
            text=text, tokens_used=usage.input_tokens + usage.output_tokens
        )


class OpenAIProvider:
    def __init__(self, api_key: str, model: str, max_tokens: int, timeout: float) -> None:
        self.client = openai.AsyncOpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    async def respond(
        self, history: List[Dict[str, str]], system_prompt: str, json_mode: bool = True
    ) -> InferenceResult:
        messages = [{"role": "system", "content": system_prompt}, *history]
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.7,
                messages=messages,
                **kwargs,
            )
        except openai.OpenAIError as exc:
            logger.error("OpenAI request failed: %s", exc)
            raise CollaboratorUnavailableError("Inference provider unavailable")

        text = response.choices[0].message.content or ""
        tokens = response.usage.total_tokens if response.usage else 0
        return InferenceResult(text=text, tokens_used=tokens)
