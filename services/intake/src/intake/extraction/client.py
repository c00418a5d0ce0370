"""OpenAI-compatible vision client that reads one spool photo per request."""

from __future__ import annotations

import base64
from typing import Optional, Tuple

import httpx

from common.config import Settings
from common.logging import get_logger

from ..errors import ExtractionError
from ..schemas import ExtractionResult, VisionModel
from .parsing import parse_extraction_reply
from .prompt import EXTRACTION_PROMPT

LOGGER = get_logger(__name__)

VISION_MODELS: Tuple[VisionModel, ...] = (
    VisionModel(id="gpt-4o", name="GPT-4o", description="Best quality, fast"),
    VisionModel(id="gpt-4o-mini", name="GPT-4o Mini", description="Faster, cheaper, good quality"),
    VisionModel(id="gpt-4-turbo", name="GPT-4 Turbo", description="Previous gen, reliable"),
    VisionModel(id="o1", name="o1 (Reasoning)", description="Deep reasoning, slower"),
    VisionModel(id="o1-mini", name="o1 Mini (Reasoning)", description="Fast reasoning"),
)


class VisionExtractionClient:
    """Issue exactly one chat-completions call per image and parse the reply.

    The client never retries; retry policy belongs to the batch orchestrator.
    Every failure mode (timeout, transport, HTTP status, missing JSON) is
    surfaced as :class:`ExtractionError`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        max_tokens: int = 1000,
        temperature: float = 0.2,
        prompt: str = EXTRACTION_PROMPT,
        models: Tuple[VisionModel, ...] = VISION_MODELS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._prompt = prompt
        self._models = models
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "VisionExtractionClient":
        return cls(
            base_url=settings.vision_base_url,
            api_key=settings.vision_api_key,
            timeout=settings.vision_timeout_seconds,
            max_tokens=settings.vision_max_tokens,
            temperature=settings.vision_temperature,
        )

    @property
    def models(self) -> Tuple[VisionModel, ...]:
        return self._models

    def supports(self, model: str) -> bool:
        return any(entry.id == model for entry in self._models)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            headers = {"User-Agent": "spool-intake/1.0"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    def _build_request(self, image: bytes, model: str, content_type: str) -> dict:
        encoded = base64.b64encode(image).decode("ascii")
        return {
            "model": model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self._prompt},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{content_type};base64,{encoded}",
                                "detail": "high",
                            },
                        },
                    ],
                }
            ],
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }

    async def extract(
        self, image: bytes, model: str, content_type: str = "image/jpeg"
    ) -> ExtractionResult:
        """Send one image and return the cleaned extraction result."""
        client = await self._get_client()
        LOGGER.info("Sending image to vision service", model=model, size_bytes=len(image))

        try:
            response = await client.post(
                "/chat/completions", json=self._build_request(image, model, content_type)
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            LOGGER.warning("Vision request timed out", model=model)
            raise ExtractionError("Vision request timed out") from exc
        except httpx.HTTPStatusError as exc:
            LOGGER.warning(
                "Vision API error",
                status=exc.response.status_code,
                detail=exc.response.text[:200],
            )
            raise ExtractionError(
                f"Vision API returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("Vision request failed", error=str(exc))
            raise ExtractionError(f"Vision request failed: {exc}") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None

        result = parse_extraction_reply(content)
        LOGGER.info(
            "Received extraction",
            model=model,
            manufacturer=result.manufacturer,
            material=result.material,
            confidence=result.confidence,
        )
        return result


__all__ = ["VISION_MODELS", "VisionExtractionClient"]
