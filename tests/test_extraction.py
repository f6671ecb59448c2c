from __future__ import annotations

import asyncio
import base64
import json
import sys
from dataclasses import replace
from pathlib import Path

import httpx
import pytest
import respx
from httpx import Response

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from label_proxy.config import settings
from label_proxy.errors import ExtractionFailure, FailureKind
from label_proxy.extraction import (
    LABEL_PROMPT,
    ExtractionPipeline,
    clean_reply_text,
    encode_image,
    parse_nutrition,
)
from label_proxy.schemas import NutritionResult

UPSTREAM = "https://upstream.test"

pipeline = ExtractionPipeline(
    replace(settings, anthropic_base_url=UPSTREAM, anthropic_api_key="sk-test", model="claude-test")
)


def _reply(text: str) -> Response:
    return Response(200, json={"id": "msg_1", "content": [{"type": "text", "text": text}]})


def _extract(image: bytes | str | None, media_type: str | None = None) -> NutritionResult:
    return asyncio.run(pipeline.extract(image, media_type=media_type))


def test_clean_reply_text_strips_fences() -> None:
    assert clean_reply_text('```json\n{"kcal": 1, "protein": 2}\n```') == '{"kcal": 1, "protein": 2}'
    assert clean_reply_text('```\n{"kcal": 1}\n```\n') == '{"kcal": 1}'
    assert clean_reply_text('  {"kcal": 1}  \n') == '{"kcal": 1}'


def test_parse_nutrition_rounds_values() -> None:
    assert parse_nutrition('{"kcal": 450.4, "protein": 24.96}') == NutritionResult(kcal=450, protein=25.0)
    assert parse_nutrition('{"kcal": 99.5, "protein": 0.05}') == NutritionResult(kcal=100, protein=0.1)


def test_parse_nutrition_accepts_zero_fallback_and_extra_fields() -> None:
    result = parse_nutrition('{"kcal": 0, "protein": 0, "note": "not found"}')
    assert result == NutritionResult(kcal=0, protein=0.0)


def test_parse_nutrition_rejects_non_json() -> None:
    with pytest.raises(ExtractionFailure) as exc_info:
        parse_nutrition("not json at all")

    failure = exc_info.value
    assert failure.kind is FailureKind.PARSE_FAILURE
    assert failure.degraded
    assert "not json at all" in failure.detail


@pytest.mark.parametrize(
    "text",
    [
        '{"kcal": "high", "protein": 10}',
        '{"kcal": 100}',
        '{"kcal": true, "protein": 10}',
        '{"kcal": 100, "protein": null}',
        '{"kcal": NaN, "protein": 1}',
        '{"kcal": 1, "protein": 1e308}',
        '{"kcal": -1.7e308, "protein": 1e308}',
        "[450, 25]",
        "42",
    ],
)
def test_parse_nutrition_rejects_invalid_fields(text: str) -> None:
    with pytest.raises(ExtractionFailure) as exc_info:
        parse_nutrition(text)

    assert exc_info.value.kind is FailureKind.VALIDATION_FAILURE
    assert exc_info.value.degraded


def test_encode_image_variants() -> None:
    assert encode_image(b"\xff\xd8\xff") == (base64.b64encode(b"\xff\xd8\xff").decode(), "image/jpeg")
    assert encode_image(" abcd ") == ("abcd", "image/jpeg")
    assert encode_image("abcd", "image/png") == ("abcd", "image/png")
    assert encode_image("data:image/png;base64,abcd") == ("abcd", "image/png")
    assert encode_image("data:image/png;base64,abcd", "image/webp") == ("abcd", "image/webp")
    assert encode_image("data:application/pdf;base64,abcd") == ("abcd", "image/jpeg")
    assert encode_image("data:application/pdf;base64,abcd", "image/png") == ("abcd", "image/png")


@pytest.mark.parametrize("image", [None, b"", "", "   ", "data:image/png;base64,"])
def test_missing_input_makes_no_upstream_call(image: bytes | str | None) -> None:
    with respx.mock(assert_all_called=False) as router:
        route = router.post(f"{UPSTREAM}/v1/messages").mock(return_value=_reply("{}"))

        with pytest.raises(ExtractionFailure) as exc_info:
            _extract(image)

    assert exc_info.value.kind is FailureKind.MISSING_INPUT
    assert exc_info.value.status_code == 400
    assert not route.called


@respx.mock
def test_extract_fenced_reply() -> None:
    respx.post(f"{UPSTREAM}/v1/messages").mock(
        return_value=_reply('```json\n{"kcal": 450, "protein": 25}\n```')
    )

    assert _extract(b"label-bytes") == NutritionResult(kcal=450, protein=25.0)


@respx.mock
def test_extract_builds_upstream_request() -> None:
    route = respx.post(f"{UPSTREAM}/v1/messages").mock(return_value=_reply('{"kcal": 1, "protein": 1}'))

    _extract("aGVsbG8=")

    request = route.calls.last.request
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == "2023-06-01"

    body = json.loads(request.content)
    assert body["model"] == "claude-test"
    assert body["max_tokens"] == 1000
    image_block, text_block = body["messages"][0]["content"]
    assert image_block["source"] == {"type": "base64", "media_type": "image/jpeg", "data": "aGVsbG8="}
    assert text_block == {"type": "text", "text": LABEL_PROMPT}


@respx.mock
def test_extract_upstream_error_skips_parsing() -> None:
    respx.post(f"{UPSTREAM}/v1/messages").mock(return_value=Response(529, text='"overloaded"'))

    with pytest.raises(ExtractionFailure) as exc_info:
        _extract(b"label")

    failure = exc_info.value
    assert failure.kind is FailureKind.UPSTREAM_ERROR
    assert failure.status_code == 529
    assert "overloaded" in failure.detail
    assert not failure.degraded


@pytest.mark.parametrize(
    "body",
    [
        {"content": []},
        {"type": "message"},
        {"content": [{"type": "image"}]},
        {"content": "text"},
        ["content"],
    ],
)
def test_extract_malformed_reply(body: object) -> None:
    with respx.mock:
        respx.post(f"{UPSTREAM}/v1/messages").mock(return_value=Response(200, json=body))

        with pytest.raises(ExtractionFailure) as exc_info:
            _extract(b"label")

    assert exc_info.value.kind is FailureKind.MALFORMED_UPSTREAM_REPLY
    assert exc_info.value.status_code == 500
    assert not exc_info.value.degraded


@respx.mock
def test_extract_non_json_upstream_body_is_malformed() -> None:
    respx.post(f"{UPSTREAM}/v1/messages").mock(return_value=Response(200, text="<html>"))

    with pytest.raises(ExtractionFailure) as exc_info:
        _extract(b"label")

    assert exc_info.value.kind is FailureKind.MALFORMED_UPSTREAM_REPLY


@respx.mock
def test_extract_timeout_maps_to_gateway_timeout() -> None:
    respx.post(f"{UPSTREAM}/v1/messages").mock(side_effect=httpx.ReadTimeout("slow"))

    with pytest.raises(ExtractionFailure) as exc_info:
        _extract(b"label")

    assert exc_info.value.kind is FailureKind.UPSTREAM_ERROR
    assert exc_info.value.status_code == 504


@respx.mock
def test_extract_connection_error_is_internal() -> None:
    respx.post(f"{UPSTREAM}/v1/messages").mock(side_effect=httpx.ConnectError("refused"))

    with pytest.raises(ExtractionFailure) as exc_info:
        _extract(b"label")

    assert exc_info.value.kind is FailureKind.INTERNAL_ERROR
    assert exc_info.value.status_code == 500
    assert "refused" in exc_info.value.detail


@respx.mock
def test_extract_is_deterministic_for_same_image() -> None:
    respx.post(f"{UPSTREAM}/v1/messages").mock(return_value=_reply('{"kcal": 212.6, "protein": 7.25}'))

    first = _extract(b"same-image")
    second = _extract(b"same-image")

    assert first == second == NutritionResult(kcal=213, protein=7.3)
