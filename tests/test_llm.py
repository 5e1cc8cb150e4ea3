import json

import httpx
import pytest
import respx
from httpx import Response

from harvester.errors import ExtractionError, SchemaViolation
from harvester.llm import LLMClient, UsageTracker, response_format
from harvester.models import OfferingList, ProfileInfo

BASE_URL = "https://llm.test/v1"
COMPLETIONS = f"{BASE_URL}/chat/completions"

WINES_JSON = json.dumps(
    {
        "offerings": [
            {
                "name": "Estate Cabernet Sauvignon 2021",
                "offering_type": "Cabernet Sauvignon",
                "vintage": 2021,
                "price": 85,
                "description": None,
            }
        ]
    }
)


def _sse(*contents: str, usage: dict | None = None) -> bytes:
    lines = []
    for text in contents:
        chunk = {"choices": [{"delta": {"content": text}}]}
        lines.append(f"data: {json.dumps(chunk)}")
    if usage:
        lines.append(f"data: {json.dumps({'choices': [], 'usage': usage})}")
    lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


@pytest.fixture
async def client():
    async with httpx.AsyncClient() as c:
        yield c


@pytest.fixture
def llm(client):
    return LLMClient(client, base_url=BASE_URL, model="test-model", api_key="test-key")


@respx.mock
async def test_streamed_output_parsed(llm):
    route = respx.post(COMPLETIONS).mock(
        return_value=Response(
            200,
            content=_sse(WINES_JSON[:40], WINES_JSON[40:], usage={"prompt_tokens": 1200, "completion_tokens": 80}),
            headers={"content-type": "text/event-stream"},
        )
    )

    result = await llm.extract_structured("system", "page text", OfferingList, "offering_list")

    assert result.offerings[0].name == "Estate Cabernet Sauvignon 2021"
    assert llm.usage.input_tokens == 1200
    assert llm.usage.output_tokens == 80
    assert llm.usage.calls == 1

    body = json.loads(route.calls.last.request.content)
    assert body["response_format"]["json_schema"]["name"] == "offering_list"
    assert body["response_format"]["json_schema"]["strict"] is True
    assert body["stream"] is True
    assert route.calls.last.request.headers["authorization"] == "Bearer test-key"


@respx.mock
async def test_markdown_fences_and_think_block_stripped(llm):
    respx.post(COMPLETIONS).mock(
        return_value=Response(200, content=_sse("<think>hmm</think>", f"```json\n{WINES_JSON}\n```"))
    )
    result = await llm.extract_structured("system", "page text", OfferingList, "offering_list")
    assert len(result.offerings) == 1


@respx.mock
async def test_nonconformant_output_is_schema_violation(llm):
    respx.post(COMPLETIONS).mock(
        return_value=Response(200, content=_sse('{"wines": []}'))
    )
    with pytest.raises(SchemaViolation) as exc:
        await llm.extract_structured("system", "page text", OfferingList, "offering_list")
    assert exc.value.schema_name == "offering_list"


@respx.mock
async def test_empty_output_is_schema_violation(llm):
    respx.post(COMPLETIONS).mock(return_value=Response(200, content=_sse()))
    with pytest.raises(SchemaViolation):
        await llm.extract_structured("system", "page text", ProfileInfo, "winery_info")


@respx.mock
async def test_http_error_is_extraction_error(llm):
    respx.post(COMPLETIONS).mock(return_value=Response(429, text="rate limited"))
    with pytest.raises(ExtractionError) as exc:
        await llm.extract_structured("system", "page text", OfferingList, "offering_list")
    assert exc.value.status_code == 429
    assert not isinstance(exc.value, SchemaViolation)
    assert llm.usage.calls == 1


@respx.mock
async def test_connection_error_is_extraction_error(llm):
    respx.post(COMPLETIONS).mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(ExtractionError):
        await llm.extract_structured("system", "page text", OfferingList, "offering_list")


def test_response_format_lists_taxonomy():
    fmt = response_format(OfferingList, "offering_list")
    schema = fmt["json_schema"]["schema"]
    offering = schema["$defs"]["ExtractedOffering"]
    assert "Pinot Noir" in offering["properties"]["offering_type"]["enum"]
    assert offering["additionalProperties"] is False


def test_usage_cost_estimate():
    usage = UsageTracker(input_cost_per_m=0.15, output_cost_per_m=0.6)
    usage.add({"prompt_tokens": 2_000_000, "completion_tokens": 500_000})
    assert usage.estimated_cost_usd == 0.6
