"""
inference.py — Multimodal completion calls against Amazon Bedrock.

One InferenceRequest = one user turn made of text and inline-image parts.
The Converse API is synchronous, so each call runs in a worker thread to
keep the event loop free while it waits.
"""

import asyncio
import base64
import logging
import time
from typing import Literal, Protocol, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from triage_agent.config import (
    AWS_ACCESS_KEY_ID,
    AWS_DEFAULT_REGION,
    AWS_SECRET_ACCESS_KEY,
    LLM_MAX_TOKENS,
    LLM_MODEL_ID,
    LLM_TEMPERATURE,
    LLM_TOP_P,
)
from triage_agent.errors import UpstreamError

logger = logging.getLogger(__name__)


# ─── Request model ────────────────────────────────────────────────────────────

class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """An inline image, base64-encoded and tagged with its MIME type."""

    type: Literal["image"] = "image"
    mime_type: str
    data: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


ContentPart = Union[TextPart, ImagePart]


class InferenceRequest(BaseModel):
    role: str = "user"
    parts: list[ContentPart] = Field(default_factory=list)
    model_id: str = LLM_MODEL_ID

    @classmethod
    def from_text(cls, text: str, images: list[ImagePart] | None = None) -> "InferenceRequest":
        return cls(parts=[TextPart(text=text), *(images or [])])


class InferenceClient(Protocol):
    async def complete(self, request: InferenceRequest) -> str:
        ...


# ─── Bedrock implementation ───────────────────────────────────────────────────

def _to_converse_block(part: ContentPart) -> dict:
    if isinstance(part, TextPart):
        return {"text": part.text}
    image_format = part.mime_type.split("/")[-1].lower()
    if image_format == "jpg":
        image_format = "jpeg"
    return {
        "image": {
            "format": image_format,
            "source": {"bytes": base64.b64decode(part.data)},
        }
    }


class BedrockInferenceClient:
    """
    Sends InferenceRequests through the Bedrock Converse API.

    Example:
        client = BedrockInferenceClient()
        text = await client.complete(InferenceRequest.from_text("Hello"))
    """

    def __init__(self, bedrock_client=None) -> None:
        self._client = bedrock_client or boto3.client(
            "bedrock-runtime",
            region_name=AWS_DEFAULT_REGION,
            aws_access_key_id=AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=AWS_SECRET_ACCESS_KEY or None,
        )

    def _converse(self, request: InferenceRequest) -> str:
        response = self._client.converse(
            modelId=request.model_id,
            messages=[
                {
                    "role": request.role,
                    "content": [_to_converse_block(p) for p in request.parts],
                }
            ],
            inferenceConfig={
                "maxTokens": LLM_MAX_TOKENS,
                "temperature": LLM_TEMPERATURE,
                "topP": LLM_TOP_P,
            },
        )
        usage = response.get("usage", {})
        logger.info(
            "Bedrock converse — model=%s, tokens_in=%s, tokens_out=%s",
            request.model_id, usage.get("inputTokens"), usage.get("outputTokens"),
        )
        blocks = response["output"]["message"]["content"]
        return "".join(b.get("text", "") for b in blocks)

    async def complete(self, request: InferenceRequest) -> str:
        n_images = sum(isinstance(p, ImagePart) for p in request.parts)
        logger.info("Inference request — parts=%d, images=%d", len(request.parts), n_images)
        t0 = time.perf_counter()
        try:
            text = await asyncio.to_thread(self._converse, request)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Bedrock inference failed: %s", exc, exc_info=True)
            raise UpstreamError(f"Model inference failed: {exc}") from exc
        logger.info("Inference complete in %.3fs — answer_len=%d", time.perf_counter() - t0, len(text))
        return text


# ─── Lazy singleton ───────────────────────────────────────────────────────────
_inference_client: BedrockInferenceClient | None = None


def get_inference_client() -> BedrockInferenceClient:
    global _inference_client
    if _inference_client is None:
        _inference_client = BedrockInferenceClient()
    return _inference_client
