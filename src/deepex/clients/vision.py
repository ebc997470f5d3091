"""
Image understanding and text-to-image generation over a Workers AI style API.

Credentials are (account id, API key) pairs; the slot id is the account id.
Both calls may raise; callers decide whether a failure is fatal.
"""

import base64

import httpx

from ..config.settings import VisionConfig
from ..observability.logging import get_logger
from ..observability.tracing import trace_span
from .credentials import CredentialSlot
from .errors import classify_status
from .request_client import ResilientClient

logger = get_logger(__name__)


def vision_prompt(user_query: str | None = None) -> str:
    prompt = (
        "Describe this image in detail: objects, people, text, layout, colours and any "
        "data shown in charts or tables. Transcribe visible text exactly."
    )
    if user_query:
        prompt += f'\n\nThe user asked: "{user_query}". Prioritise details relevant to that question.'
    return prompt


class VisionClient:
    provider_name = "vision"

    def __init__(self, http: httpx.AsyncClient, client: ResilientClient, config: VisionConfig):
        self._http = http
        self._client = client
        self.config = config

    def _url(self, slot: CredentialSlot, model: str) -> str:
        return f"{self.config.base_url}/{slot.id}/ai/run/{model}"

    def _headers(self, slot: CredentialSlot) -> dict[str, str]:
        return {"Authorization": f"Bearer {slot.secret}", "Content-Type": "application/json"}

    async def _analyze(self, payload: dict, slot: CredentialSlot) -> str:
        response = await self._http.post(
            self._url(slot, self.config.vision_model), json=payload, headers=self._headers(slot)
        )
        if response.status_code >= 400:
            raise classify_status(response.status_code, response.text, provider=self.provider_name)
        return ((response.json().get("result") or {}).get("response")) or ""

    async def _generate(self, payload: dict, slot: CredentialSlot) -> bytes:
        response = await self._http.post(
            self._url(slot, self.config.image_model), json=payload, headers=self._headers(slot)
        )
        if response.status_code >= 400:
            raise classify_status(response.status_code, response.text, provider=self.provider_name)
        if "application/json" in response.headers.get("content-type", ""):
            encoded = (response.json().get("result") or {}).get("image") or ""
            return base64.b64decode(encoded) if encoded else b""
        return response.content

    @trace_span("vision.analyze")
    async def analyze(self, image_b64: str, mime_type: str = "image/jpeg", user_query: str | None = None) -> str:
        payload = {
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": vision_prompt(user_query)},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
                    ],
                }
            ],
            "max_tokens": self.config.max_tokens,
        }
        return await self._client.call(lambda slot: self._analyze(payload, slot))

    @trace_span("vision.generate")
    async def generate(self, prompt: str) -> bytes:
        payload = {
            "prompt": prompt,
            "num_steps": self.config.image_steps,
            "width": self.config.image_size,
            "height": self.config.image_size,
        }
        image = await self._client.call(lambda slot: self._generate(payload, slot))
        logger.info("Image generated", size_bytes=len(image))
        return image
