"""Schema-constrained chat completions against an OpenAI-compatible API."""

import json
import logging
from dataclasses import dataclass
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from harvester.config import settings
from harvester.errors import ExtractionError, SchemaViolation

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass
class UsageTracker:
    """Token usage across every generation call in a run."""

    input_tokens: int = 0
    output_tokens: int = 0
    calls: int = 0
    input_cost_per_m: float = settings.llm_input_cost_per_m
    output_cost_per_m: float = settings.llm_output_cost_per_m

    def add(self, usage: dict) -> None:
        self.input_tokens += usage.get("prompt_tokens", 0) or 0
        self.output_tokens += usage.get("completion_tokens", 0) or 0

    @property
    def estimated_cost_usd(self) -> float:
        cost = (
            self.input_tokens / 1_000_000 * self.input_cost_per_m
            + self.output_tokens / 1_000_000 * self.output_cost_per_m
        )
        return round(cost, 3)


def response_format(model: type[BaseModel], name: str) -> dict:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": name,
            "strict": True,
            "schema": model.model_json_schema(),
        },
    }


def _strip_markdown_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:])
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


class LLMClient:
    def __init__(
        self,
        client: httpx.AsyncClient,
        usage: UsageTracker | None = None,
        *,
        base_url: str = settings.llm_base_url,
        model: str = settings.llm_model,
        api_key: str = settings.llm_api_key,
        temperature: float = settings.llm_temperature,
        max_tokens: int = settings.llm_max_tokens,
    ) -> None:
        self._client = client
        self.usage = usage or UsageTracker()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def _stream_completion(self, payload: dict) -> str:
        """POST a streamed chat completion and return the concatenated content."""
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        raw_content = ""
        try:
            async with self._client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=httpx.Timeout(connect=30, read=120, write=30, pool=30),
            ) as resp:
                if resp.status_code != 200:
                    body = await resp.aread()
                    raise ExtractionError(
                        f"LLM API error {resp.status_code}: {body.decode(errors='replace')}",
                        resp.status_code,
                    )
                async for line in resp.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    chunk = line[6:]
                    if chunk.strip() == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError:
                        continue
                    if data.get("usage"):
                        self.usage.add(data["usage"])
                    choices = data.get("choices")
                    if not choices:
                        continue
                    text = choices[0].get("delta", {}).get("content")
                    if text:
                        raw_content += text
        except httpx.HTTPError as e:
            raise ExtractionError(f"LLM connection error: {e}") from e
        finally:
            self.usage.calls += 1

        # Reasoning models served locally may prepend a thinking block
        if "<think>" in raw_content:
            raw_content = raw_content.split("</think>")[-1].strip()
        return raw_content

    async def extract_structured(
        self,
        system_prompt: str,
        user_content: str,
        schema: type[M],
        schema_name: str,
    ) -> M:
        """
        Generate output constrained to *schema* and parse it.

        Raises:
            SchemaViolation: the response is empty or does not validate.
            ExtractionError: the service is unreachable or returned an error.
        """
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "response_format": response_format(schema, schema_name),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        logger.debug("Sending %s to %s (%d chars)", schema_name, self.model, len(user_content))

        raw = await self._stream_completion(payload)
        if not raw:
            raise SchemaViolation(f"LLM returned no content for {schema_name}", schema_name)
        try:
            return schema.model_validate_json(_strip_markdown_fences(raw))
        except ValidationError as e:
            raise SchemaViolation(
                f"LLM output for {schema_name} does not match schema: {e.error_count()} errors",
                schema_name,
            ) from e
