"""
Tests for the Bedrock inference client, with a stubbed runtime client.
"""

import base64

import pytest
from botocore.exceptions import ClientError

from triage_agent.errors import UpstreamError
from triage_agent.llm.inference import BedrockInferenceClient, ImagePart, InferenceRequest


class StubBedrock:
    def __init__(self, answer="ok", error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    def converse(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return {
            "output": {"message": {"content": [{"text": self.answer}]}},
            "usage": {"inputTokens": 10, "outputTokens": 2},
        }


async def test_text_and_images_become_converse_blocks():
    stub = StubBedrock(answer='{"product": "Checkout"}')
    client = BedrockInferenceClient(bedrock_client=stub)
    image = ImagePart(mime_type="image/jpg", data=base64.b64encode(b"raw").decode("ascii"))

    answer = await client.complete(InferenceRequest.from_text("describe", [image]))

    assert answer == '{"product": "Checkout"}'
    [message] = stub.calls[0]["messages"]
    assert message["role"] == "user"
    assert message["content"][0] == {"text": "describe"}
    assert message["content"][1] == {"image": {"format": "jpeg", "source": {"bytes": b"raw"}}}


async def test_client_error_becomes_upstream_error():
    error = ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "Converse")
    client = BedrockInferenceClient(bedrock_client=StubBedrock(error=error))

    with pytest.raises(UpstreamError, match="ThrottlingException"):
        await client.complete(InferenceRequest.from_text("hi"))


def test_image_part_data_uri():
    image = ImagePart(mime_type="image/webp", data="AAAA")
    assert image.data_uri == "data:image/webp;base64,AAAA"
