from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import json
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import BaseModel

from budgetbuddy.logging_config import get_logger
from budgetbuddy.receipt_parser import extract_from_text

logger = get_logger()


class OcrUnavailable(RuntimeError):
    """Raised when receipt text cannot be obtained from the OCR service."""


class OcrClient(Protocol):
    def extract_text(self, base64_image: str) -> str:
        ...


class OcrPreview(BaseModel):
    amount: Decimal | None = None
    description: str | None = None
    raw_text: str | None = None


@dataclass(frozen=True)
class GoogleVisionOcrClient:
    api_key: str | None
    base_url: str = "https://vision.googleapis.com/v1/images:annotate"
    request_timeout: float = 15

    def extract_text(self, base64_image: str) -> str:
        if not self.api_key:
            raise OcrUnavailable("Google Vision API key not configured")

        payload = {
            "requests": [
                {
                    "image": {"content": base64_image},
                    "features": [{"type": "TEXT_DETECTION"}],
                }
            ]
        }
        request = Request(
            f"{self.base_url}?key={self.api_key}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=self.request_timeout) as response:
                body = json.load(response)
        except HTTPError as exc:
            raise OcrUnavailable(f"Google Vision API returned {exc.code}") from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise OcrUnavailable("Google Vision API unavailable") from exc

        return _first_annotation(body)


def _first_annotation(body: dict) -> str:
    try:
        description = body["responses"][0]["textAnnotations"][0]["description"]
    except (KeyError, IndexError, TypeError) as exc:
        raise OcrUnavailable("Google Vision response missing text") from exc
    if not isinstance(description, str):
        raise OcrUnavailable("Google Vision response missing text")
    return description


def read_receipt_text(client: OcrClient, base64_image: str) -> str | None:
    try:
        return client.extract_text(base64_image)
    except OcrUnavailable as exc:
        logger.warning(f"OCR unavailable: {exc}")
        return None


def extract_receipt(client: OcrClient, base64_image: str) -> OcrPreview:
    text = read_receipt_text(client, base64_image)
    if text is None:
        return OcrPreview()

    extraction = extract_from_text(text)
    return OcrPreview(
        amount=extraction.amount,
        description=extraction.label,
        raw_text=text,
    )
