from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Protocol, Sequence

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama

from ..core.config import ReasoningSettings, Settings
from ..core.logging import get_logger
from ..orchestration.errors import SchemaConformanceError, TransportError

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class ReasoningRequest:
    instruction_text: str
    response_schema: Mapping[str, Any] = field(default_factory=dict)
    stage_id: str | None = None


class ReasoningService(Protocol):
    async def invoke(self, request: ReasoningRequest) -> dict[str, Any]:
        """Return one JSON object for ``request`` or raise a ``HermesError``."""

    async def aclose(self) -> None:
        ...


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


def parse_json_object(text: str, *, stage_id: str | None = None) -> dict[str, Any]:
    """Extract a JSON object from model text, tolerating prose around it."""
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise SchemaConformanceError("Reasoning response did not contain JSON", stage_id=stage_id)
        try:
            decoded = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise SchemaConformanceError(
                "Reasoning response contained malformed JSON", stage_id=stage_id, detail=str(exc)
            ) from exc
    if not isinstance(decoded, dict):
        raise SchemaConformanceError("Reasoning response must be a JSON object", stage_id=stage_id)
    return decoded


class HTTPReasoningService:
    """Posts ``{prompt, response_json_schema}`` to an integration endpoint."""

    def __init__(
        self,
        settings: ReasoningSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._headers = {"Content-Type": "application/json"}
        if settings.api_key:
            self._headers["Authorization"] = f"Bearer {settings.api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.timeout_seconds),
            verify=settings.verify_ssl,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def invoke(self, request: ReasoningRequest) -> dict[str, Any]:
        body = {
            "prompt": request.instruction_text,
            "response_json_schema": dict(request.response_schema),
            "model": self._settings.model,
            "temperature": self._settings.temperature,
        }
        try:
            response = await self._client.post(self._settings.endpoint, json=body, headers=self._headers)
        except httpx.TimeoutException as exc:
            raise TransportError(
                "Reasoning service request timed out", stage_id=request.stage_id, detail=str(exc)
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"Reasoning service request failed: {exc}", stage_id=request.stage_id, detail=type(exc).__name__
            ) from exc

        if response.status_code >= 400:
            logger.warning(
                "reasoning_http_error",
                stage=request.stage_id,
                status=response.status_code,
                endpoint=self._settings.endpoint,
            )
            raise TransportError(
                f"Reasoning service returned HTTP {response.status_code}",
                stage_id=request.stage_id,
                detail={"status": response.status_code, "body": response.text[:500]},
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SchemaConformanceError(
                "Reasoning service returned a non-JSON body", stage_id=request.stage_id
            ) from exc
        if isinstance(payload, dict) and isinstance(payload.get("result"), dict) and len(payload) == 1:
            payload = payload["result"]
        if not isinstance(payload, dict):
            raise SchemaConformanceError("Reasoning response must be a JSON object", stage_id=request.stage_id)
        return payload


def _messages_for(request: ReasoningRequest, system_prompt: str) -> Sequence[BaseMessage]:
    schema = json.dumps(dict(request.response_schema), indent=2)
    prompt = f"{request.instruction_text}\n\nThe JSON object must satisfy this JSON Schema:\n{schema}"
    return [SystemMessage(content=system_prompt), HumanMessage(content=prompt)]


def _extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        return " ".join(str(item) for item in content)
    return str(content)


@dataclass
class ChatReasoningService:
    """LangChain chat-model client, Ollama by default."""

    settings: ReasoningSettings
    _client: Any
    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def from_settings(cls, settings: ReasoningSettings, *, client: Any | None = None) -> "ChatReasoningService":
        if client is None:
            cache_key = f"{settings.host}:{settings.port}:{settings.model}"
            cached = cls._client_cache.get(cache_key)
            if cached is None:
                cached = ChatOllama(
                    model=settings.model,
                    base_url=_build_base_url(settings.host, settings.port),
                    temperature=settings.temperature,
                    format="json",
                )
                cls._client_cache[cache_key] = cached
            client = cached
        return cls(settings=settings, _client=client)

    async def aclose(self) -> None:
        return None

    async def invoke(self, request: ReasoningRequest) -> dict[str, Any]:
        messages = _messages_for(request, self.settings.system_prompt)
        try:
            result = await self._client.ainvoke(messages)
        except Exception as exc:
            logger.warning("reasoning_chat_failed", stage=request.stage_id, error=str(exc), model=self.settings.model)
            raise TransportError(
                f"Chat model invocation failed: {exc}", stage_id=request.stage_id, detail=type(exc).__name__
            ) from exc
        return parse_json_object(_extract_content(result), stage_id=request.stage_id)


def build_reasoning_service(settings: Settings) -> ReasoningService:
    reasoning = settings.reasoning
    if reasoning.backend == "ollama":
        return ChatReasoningService.from_settings(reasoning)
    return HTTPReasoningService(reasoning)


__all__ = [
    "ReasoningRequest",
    "ReasoningService",
    "HTTPReasoningService",
    "ChatReasoningService",
    "build_reasoning_service",
    "parse_json_object",
]
