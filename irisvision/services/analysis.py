"""Remote iris analysis collaborators and the response schema they must meet."""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import os
from typing import Any, Protocol

import httpx
from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from irisvision.config import Settings
from irisvision.errors import SchemaValidationError
from irisvision.metrics import analysis_schema_violation_total

from .image_packager import EncodedPayload

logger = logging.getLogger(__name__)


class PatternMetrics(BaseModel):
    prevalence: str
    regions: str
    genetic: str


class Pattern(BaseModel):
    name: str
    description: str
    metrics: PatternMetrics | None = None


class Sensitivity(BaseModel):
    name: str
    description: str


class Rarity(BaseModel):
    title: str
    description: str
    percentage: float = Field(ge=0, le=100)


class Insight(BaseModel):
    icon: str
    title: str
    description: str


class IrisAnalysis(BaseModel):
    pattern: Pattern
    sensitivity: Sensitivity
    uniquePatterns: list[str]
    rarity: Rarity
    additionalInsights: list[Insight]
    summary: str


_PROMPT = (
    "You are an expert iris analyst. Analyze this iris image and provide a "
    "detailed, engaging analysis of the main pattern, color variations, light "
    "sensitivity, unique features, rarity and any additional insights.\n"
    "Return valid JSON only, with this exact structure:\n"
    '{"pattern": {"name": str, "description": str, '
    '"metrics": {"prevalence": str, "regions": str, "genetic": str}}, '
    '"sensitivity": {"name": str, "description": str}, '
    '"uniquePatterns": [str], '
    '"rarity": {"title": str, "description": str, "percentage": 0-100}, '
    '"additionalInsights": [{"icon": str, "title": str, "description": str}], '
    '"summary": str}'
)


def strip_code_fences(text: str) -> str:
    """Drop a markdown ```json fence the model sometimes wraps around JSON."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        cleaned = cleaned[first_newline + 1 :] if first_newline != -1 else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def parse_analysis(completion: Any) -> dict[str, Any]:
    """Validate a completion string against :class:`IrisAnalysis`."""
    if not isinstance(completion, str) or not completion.strip():
        raise SchemaValidationError("No completion in analysis response")
    try:
        data = json.loads(strip_code_fences(completion))
        analysis = IrisAnalysis.model_validate(data)
    except (json.JSONDecodeError, ValidationError, TypeError) as exc:
        analysis_schema_violation_total.inc()
        logger.error("Analysis response violates schema: %s", exc)
        raise SchemaValidationError("Malformed analysis response") from exc
    return analysis.model_dump(exclude_none=True)


class AnalysisClient(Protocol):
    async def analyze(self, payload: EncodedPayload) -> dict[str, Any]:
        ...


class ToolkitAnalysisClient:
    """LLM toolkit endpoint: ``{messages}`` in, ``{completion}`` out."""

    def __init__(
        self,
        url: str,
        *,
        max_response_bytes: int = 256 * 1024,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.max_response_bytes = max_response_bytes
        self.timeout = timeout
        self._transport = transport

    def _request_body(self, payload: EncodedPayload) -> dict[str, Any]:
        return {
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": _PROMPT},
                        {"type": "image", "image": payload.to_base64()},
                    ],
                }
            ],
            "maxResponseSize": self.max_response_bytes,
        }

    async def analyze(self, payload: EncodedPayload) -> dict[str, Any]:
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            resp = await client.post(
                self.url,
                json=self._request_body(payload),
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
        if len(resp.content) > self.max_response_bytes:
            analysis_schema_violation_total.inc()
            raise SchemaValidationError(
                f"Analysis response of {len(resp.content)} bytes exceeds limit"
            )
        try:
            data = resp.json()
        except ValueError as exc:
            analysis_schema_violation_total.inc()
            raise SchemaValidationError("Analysis response is not JSON") from exc
        if not isinstance(data, dict):
            analysis_schema_violation_total.inc()
            raise SchemaValidationError("Analysis response is not an object")
        return parse_analysis(data.get("completion"))


_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily build and cache the OpenAI client."""

    global _client
    if _client is None:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY environment variable is not set")
        _client = OpenAI(api_key=api_key)
    return _client


def _close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
    _client = None


atexit.register(_close_client)


class OpenAIAnalysisClient:
    """GPT vision with an inline data URL; the SDK call runs in a thread."""

    def __init__(self, model: str = "gpt-4.1-mini", *, timeout: float = 15.0):
        self.model = model
        self.timeout = timeout

    def _complete(self, payload: EncodedPayload) -> str:
        client = _get_client()
        response = client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": _PROMPT},
                        {"type": "image_url", "image_url": {"url": payload.data_uri()}},
                    ],
                }
            ],
            response_format={"type": "json_object"},
            timeout=self.timeout,
        )
        try:
            return response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise SchemaValidationError("Malformed OpenAI response") from exc

    async def analyze(self, payload: EncodedPayload) -> dict[str, Any]:
        try:
            completion = await asyncio.to_thread(self._complete, payload)
        except OpenAIError:
            logger.exception("OpenAI request failed")
            raise
        return parse_analysis(completion)


def build_analysis_client(cfg: Settings) -> AnalysisClient:
    provider = cfg.analysis_provider.lower()
    if provider == "openai":
        return OpenAIAnalysisClient(cfg.openai_model, timeout=cfg.effective_analysis_timeout)
    if provider == "toolkit":
        return ToolkitAnalysisClient(
            cfg.analysis_api_url,
            max_response_bytes=cfg.analysis_max_response_bytes,
            timeout=cfg.effective_analysis_timeout,
        )
    raise ValueError(f"unknown analysis provider: {cfg.analysis_provider}")


__all__ = [
    "AnalysisClient",
    "IrisAnalysis",
    "OpenAIAnalysisClient",
    "ToolkitAnalysisClient",
    "build_analysis_client",
    "parse_analysis",
    "strip_code_fences",
]
