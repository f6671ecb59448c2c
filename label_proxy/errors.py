from __future__ import annotations

from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    RATE_LIMITED = "RateLimited"
    MISSING_INPUT = "MissingInput"
    UPSTREAM_ERROR = "UpstreamError"
    MALFORMED_UPSTREAM_REPLY = "MalformedUpstreamReply"
    PARSE_FAILURE = "ParseFailure"
    VALIDATION_FAILURE = "ValidationFailure"
    INTERNAL_ERROR = "InternalError"


_MESSAGES: dict[FailureKind, str] = {
    FailureKind.RATE_LIMITED: "Rate limit exceeded. Please wait a minute.",
    FailureKind.MISSING_INPUT: "No image provided",
    FailureKind.UPSTREAM_ERROR: "API request failed",
    FailureKind.MALFORMED_UPSTREAM_REPLY: "Invalid API response",
    FailureKind.PARSE_FAILURE: "Failed to parse OCR response",
    FailureKind.VALIDATION_FAILURE: "Invalid nutrition values in OCR response",
    FailureKind.INTERNAL_ERROR: "Internal server error",
}

_STATUS_CODES: dict[FailureKind, int] = {
    FailureKind.RATE_LIMITED: 429,
    FailureKind.MISSING_INPUT: 400,
}

DEGRADED_KINDS = frozenset({FailureKind.PARSE_FAILURE, FailureKind.VALIDATION_FAILURE})


class ExtractionFailure(Exception):
    """Terminal failure of a label extraction, rendered as a JSON error body.

    Parse and validation failures are "degraded": the response still carries
    ``kcal: 0, protein: 0`` so a client can show an empty result without
    special-casing the error.
    """

    def __init__(self, kind: FailureKind, detail: str = "", status_code: int | None = None) -> None:
        super().__init__(detail or _MESSAGES[kind])
        self.kind = kind
        self.detail = detail
        self.status_code = status_code if status_code is not None else _STATUS_CODES.get(kind, 500)

    @property
    def message(self) -> str:
        return _MESSAGES[self.kind]

    @property
    def degraded(self) -> bool:
        return self.kind in DEGRADED_KINDS

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.kind == FailureKind.INTERNAL_ERROR:
            payload["message"] = self.detail
        elif self.detail:
            payload["details"] = self.detail
        if self.degraded:
            payload["kcal"] = 0
            payload["protein"] = 0
        return payload

    def __repr__(self) -> str:
        return f"ExtractionFailure(kind={self.kind.value!r}, status_code={self.status_code}, detail={self.detail!r})"
