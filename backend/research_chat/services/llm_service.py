from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Iterable, Optional

from research_chat.providers.base import LLMAdapter, ProviderError, ProviderRuntimeConfig
from research_chat.schemas.chat import ChatMessage

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class CostMeter:
    """Accumulates token usage and cost for one turn."""

    total: float = 0.0
    token_in: int = 0
    token_out: int = 0

    def charge(self, token_in: int, token_out: int, cost: float) -> None:
        self.token_in += token_in
        self.token_out += token_out
        self.total += cost


class TextGenerator:
    """Text-generation capability: prompt assembly, streaming and cost metering."""

    def __init__(
        self,
        adapter: LLMAdapter,
        runtime_cfg: ProviderRuntimeConfig,
        cost_per_1k_input: float = 0.0,
        cost_per_1k_output: float = 0.0,
    ) -> None:
        self._adapter = adapter
        self._cfg = runtime_cfg
        self._cost_per_1k_input = cost_per_1k_input
        self._cost_per_1k_output = cost_per_1k_output

    @staticmethod
    def build_messages(
        system_prompt: str,
        user_prompt: str,
        history: Iterable[ChatMessage] = (),
    ) -> list[dict]:
        """Create the provider message list: system, prior turns, then the prompt."""

        messages = [{"role": "system", "content": system_prompt}]
        for item in history:
            if item.sender == "user":
                role = "user"
            elif item.sender == "system":
                role = "system"
            else:
                role = "assistant"
            messages.append({"role": role, "content": item.message})
        messages.append({"role": "user", "content": user_prompt})
        return messages

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        history: Iterable[ChatMessage] = (),
        *,
        meter: CostMeter,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate a full response and charge its cost to `meter`."""

        messages = self.build_messages(system_prompt, user_prompt, history)
        result = await self._adapter.generate(self._runtime_cfg(temperature), messages)
        self._charge(meter, messages, result.content, result.token_in, result.token_out)
        return result.content

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        history: Iterable[ChatMessage] = (),
        *,
        meter: CostMeter,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Yield response text as it is produced and charge the cost at the end."""

        messages = self.build_messages(system_prompt, user_prompt, history)
        produced: list[str] = []
        token_in: Optional[int] = None
        token_out: Optional[int] = None
        try:
            async for chunk in self._adapter.stream(self._runtime_cfg(temperature), messages):
                if chunk.token_in is not None:
                    token_in = chunk.token_in
                if chunk.token_out is not None:
                    token_out = chunk.token_out
                if chunk.content:
                    produced.append(chunk.content)
                    yield chunk.content
        finally:
            # A stream that failed before producing anything is not billed.
            if produced or token_in is not None or token_out is not None:
                self._charge(meter, messages, "".join(produced), token_in, token_out)

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        meter: CostMeter,
        temperature: Optional[float] = 0.0,
    ) -> Any:
        """Generate a response and decode it as JSON."""

        content = await self.complete(
            system_prompt, user_prompt, meter=meter, temperature=temperature
        )
        return parse_json_content(content)

    def _runtime_cfg(self, temperature: Optional[float]) -> ProviderRuntimeConfig:
        if temperature is None:
            return self._cfg
        return replace(self._cfg, temperature=temperature)

    def _charge(
        self,
        meter: CostMeter,
        messages: list[dict],
        output: str,
        token_in: Optional[int],
        token_out: Optional[int],
    ) -> None:
        # Providers that omit usage are estimated at four characters per token.
        if token_in is None:
            token_in = sum(len(str(item.get("content", ""))) for item in messages) // 4
        if token_out is None:
            token_out = len(output) // 4
        cost = (
            token_in * self._cost_per_1k_input + token_out * self._cost_per_1k_output
        ) / 1000
        meter.charge(token_in, token_out, cost)


def parse_json_content(content: str) -> Any:
    """Decode JSON from model output, tolerating markdown code fences."""

    cleaned = _FENCE_PATTERN.sub("", content.strip())
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    for opener, closer in (("[", "]"), ("{", "}")):
        start = cleaned.find(opener)
        end = cleaned.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except ValueError:
                continue
    logger.debug("Unparseable JSON content: %s", content[:200])
    raise ProviderError("PROVIDER_PARSE_ERROR", "Model output is not valid JSON.")
