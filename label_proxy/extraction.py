from __future__ import annotations

import base64
import json
import logging
import math
import re
from typing import get_args

import httpx
from pydantic import ValidationError

from label_proxy.config import Settings, settings as default_settings
from label_proxy.errors import ExtractionFailure, FailureKind
from label_proxy.schemas import LabelReading, MediaType, NutritionResult

logger = logging.getLogger("label_proxy.extraction")

MESSAGES_PATH = "/v1/messages"
DEFAULT_MEDIA_TYPE = "image/jpeg"
SUPPORTED_MEDIA_TYPES = frozenset(get_args(MediaType))

LABEL_PROMPT = """Analyze this nutrition label and extract the nutritional values.
Look for the values PER 100g of product (not per serving!).

VERY IMPORTANT: Return ONLY a plain JSON object without any additional text, markdown or explanations.

Format:
{"kcal": number_of_calories, "protein": grams_of_protein}

Example:
{"kcal": 450, "protein": 25}

If you cannot find precise values, return:
{"kcal": 0, "protein": 0}

Remember: the JSON alone, nothing more!"""

_JSON_FENCE = re.compile(r"```json\n?")
_BARE_FENCE = re.compile(r"```\n?")
_DATA_URL = re.compile(r"^data:(?P<media_type>[\w.+-]+/[\w.+-]+);base64,", re.IGNORECASE)


def build_messages_payload(image_b64: str, media_type: str, *, model: str, max_tokens: int) -> dict:
    return {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": image_b64},
                    },
                    {"type": "text", "text": LABEL_PROMPT},
                ],
            }
        ],
    }


def encode_image(image: bytes | str | None, media_type: str | None = None) -> tuple[str, str]:
    """Return ``(base64_data, media_type)`` for an image given as raw bytes or base64 text.

    A ``data:<media>;base64,`` prefix on text input is stripped and its media
    type used unless ``media_type`` is given explicitly.
    """
    if image is None:
        raise ExtractionFailure(FailureKind.MISSING_INPUT)

    if isinstance(image, (bytes, bytearray, memoryview)):
        data = base64.b64encode(bytes(image)).decode("ascii")
    else:
        data = image.strip()
        match = _DATA_URL.match(data)
        if match:
            declared = match.group("media_type").lower()
            if declared not in SUPPORTED_MEDIA_TYPES:
                logger.warning("Ignoring unsupported data URL media type %s", declared)
                declared = DEFAULT_MEDIA_TYPE
            media_type = media_type or declared
            data = data[match.end():]

    if not data:
        raise ExtractionFailure(FailureKind.MISSING_INPUT)
    return data, media_type or DEFAULT_MEDIA_TYPE


def clean_reply_text(text: str) -> str:
    text = _JSON_FENCE.sub("", text)
    text = _BARE_FENCE.sub("", text)
    return text.strip()


def reply_text(upstream: httpx.Response) -> str:
    try:
        data = upstream.json()
    except ValueError as exc:
        raise ExtractionFailure(FailureKind.MALFORMED_UPSTREAM_REPLY, "Upstream body is not JSON") from exc

    content = data.get("content") if isinstance(data, dict) else None
    if not isinstance(content, list) or not content or not isinstance(content[0], dict):
        raise ExtractionFailure(FailureKind.MALFORMED_UPSTREAM_REPLY, "Upstream reply has no content")

    text = content[0].get("text")
    if not isinstance(text, str):
        raise ExtractionFailure(FailureKind.MALFORMED_UPSTREAM_REPLY, "First content block has no text")
    return text


def _round_half_up(value: float, digits: int = 0) -> float:
    scale = 10**digits
    return math.floor(value * scale + 0.5) / scale


def normalize(reading: LabelReading) -> NutritionResult:
    return NutritionResult(
        kcal=int(_round_half_up(reading.kcal)),
        protein=_round_half_up(reading.protein, 1),
    )


def parse_nutrition(text: str) -> NutritionResult:
    """Turn the model's answer into rounded per-100g values.

    Fenced code blocks are removed first. Text that is not JSON raises a
    ``ParseFailure``; JSON without numeric ``kcal`` and ``protein`` raises a
    ``ValidationFailure``.
    """
    cleaned = clean_reply_text(text)

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning("Could not parse model reply as JSON: %s; reply=%r", exc, cleaned)
        raise ExtractionFailure(FailureKind.PARSE_FAILURE, f"{exc.msg} in reply: {cleaned}") from exc

    try:
        reading = LabelReading.model_validate(parsed)
    except ValidationError as exc:
        logger.warning("Model reply failed validation: reply=%r", cleaned)
        raise ExtractionFailure(FailureKind.VALIDATION_FAILURE, f"Invalid data format in reply: {cleaned}") from exc

    try:
        return normalize(reading)
    except OverflowError as exc:
        logger.warning("Model reply values out of range: reply=%r", cleaned)
        raise ExtractionFailure(FailureKind.VALIDATION_FAILURE, f"Values out of range in reply: {cleaned}") from exc


class ExtractionPipeline:
    def __init__(self, config: Settings = default_settings) -> None:
        self.config = config

    @property
    def url(self) -> str:
        return f"{self.config.anthropic_base_url}{MESSAGES_PATH}"

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self.config.connect_timeout_s,
            read=self.config.upstream_timeout_s,
            write=self.config.upstream_timeout_s,
            pool=self.config.connect_timeout_s,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.config.anthropic_api_key,
            "anthropic-version": self.config.anthropic_version,
        }

    async def extract(self, image: bytes | str | None, media_type: str | None = None) -> NutritionResult:
        try:
            return await self._extract(image, media_type)
        except ExtractionFailure:
            raise
        except Exception as exc:
            logger.exception("Label extraction failed unexpectedly")
            raise ExtractionFailure(FailureKind.INTERNAL_ERROR, str(exc)) from exc

    async def _extract(self, image: bytes | str | None, media_type: str | None) -> NutritionResult:
        image_b64, media_type = encode_image(image, media_type)
        payload = build_messages_payload(
            image_b64,
            media_type,
            model=self.config.model,
            max_tokens=self.config.max_output_tokens,
        )

        upstream = await self._post(payload)
        if not upstream.is_success:
            logger.error("Upstream API error: status=%s body=%s", upstream.status_code, upstream.text)
            raise ExtractionFailure(FailureKind.UPSTREAM_ERROR, upstream.text, status_code=upstream.status_code)

        try:
            text = reply_text(upstream)
        except ExtractionFailure:
            logger.error("Unexpected upstream reply shape: %s", upstream.text)
            raise

        return parse_nutrition(text)

    async def _post(self, payload: dict) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout()) as client:
                return await client.post(self.url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            logger.error("Upstream timeout on %s", MESSAGES_PATH)
            raise ExtractionFailure(
                FailureKind.UPSTREAM_ERROR,
                f"Upstream timeout on {MESSAGES_PATH}",
                status_code=504,
            ) from exc
