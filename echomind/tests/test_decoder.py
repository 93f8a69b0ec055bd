import json
from dataclasses import replace

import pytest

from echomind.domain.exceptions import AuthError, ProviderError, SchemaError
from echomind.domain.models import FinishReason
from echomind.providers.decoder import decode_response
from echomind.providers.registry import PROVIDER_REGISTRY


def _body(obj) -> bytes:
    return json.dumps(obj).encode("utf-8")


def test_openai_reply():
    body = _body(
        {
            "model": "gpt-4-0613",
            "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
        }
    )
    reply = decode_response(body, PROVIDER_REGISTRY["openai"], latency=0.5)
    assert reply.content == "ok"
    assert reply.model_used == "gpt-4-0613"
    assert reply.usage.total_tokens == 4
    assert reply.latency == 0.5
    assert reply.provider_id == "openai"
    assert reply.finish_reason is FinishReason.STOP


def test_anthropic_reply():
    body = _body(
        {
            "type": "message",
            "model": "claude-3-haiku",
            "content": [{"type": "text", "text": "Hel"}, {"type": "text", "text": "lo"}],
            "stop_reason": "max_tokens",
            "usage": {"input_tokens": 10, "output_tokens": 2},
        }
    )
    reply = decode_response(body, PROVIDER_REGISTRY["claude"])
    assert reply.content == "Hello"
    assert reply.finish_reason is FinishReason.LENGTH
    assert reply.usage.prompt_tokens == 10


def test_gemini_reply():
    body = _body(
        {
            "candidates": [{"content": {"parts": [{"text": "hi"}], "role": "model"}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1},
        }
    )
    reply = decode_response(body, PROVIDER_REGISTRY["gemini"], requested_model="gemini-1.5-flash")
    assert reply.content == "hi"
    assert reply.model_used == "gemini-1.5-flash"
    assert reply.usage.completion_tokens == 1


def test_cohere_and_ollama_replies():
    cohere = decode_response(
        _body({"text": "c", "finish_reason": "COMPLETE", "meta": {"billed_units": {"input_tokens": 1, "output_tokens": 1}}}),
        PROVIDER_REGISTRY["cohere"],
    )
    assert cohere.content == "c"
    assert cohere.finish_reason is FinishReason.STOP
    ollama = decode_response(
        _body({"model": "llama3", "message": {"role": "assistant", "content": "o"}, "done": True, "eval_count": 7}),
        PROVIDER_REGISTRY["ollama"],
    )
    assert ollama.content == "o"
    assert ollama.usage.completion_tokens == 7


def test_non_json_is_schema_error():
    with pytest.raises(SchemaError):
        decode_response(b"<html>oops</html>", PROVIDER_REGISTRY["openai"])


def test_missing_fields_is_schema_error():
    with pytest.raises(SchemaError):
        decode_response(_body({"id": "x"}), PROVIDER_REGISTRY["openai"])
    with pytest.raises(SchemaError):
        decode_response(_body({"choices": "nope"}), PROVIDER_REGISTRY["openai"])


def test_empty_content_is_schema_error():
    body = _body({"choices": [{"message": {"content": ""}}]})
    with pytest.raises(SchemaError):
        decode_response(body, PROVIDER_REGISTRY["openai"])


def test_explicit_error_payload():
    body = _body({"error": {"message": "model not found", "type": "invalid_request_error"}})
    with pytest.raises(ProviderError) as ei:
        decode_response(body, PROVIDER_REGISTRY["openai"], status_code=404)
    assert "model not found" in str(ei.value)
    assert ei.value.retryable is False
    assert ei.value.provider == "openai"


def test_error_payload_with_200_status():
    body = _body({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    with pytest.raises(ProviderError) as ei:
        decode_response(body, PROVIDER_REGISTRY["claude"])
    assert ei.value.retryable is True


@pytest.mark.parametrize("status", [429, 500, 503])
def test_retryable_statuses(status):
    with pytest.raises(ProviderError) as ei:
        decode_response(b"busy", PROVIDER_REGISTRY["openai"], status_code=status)
    assert ei.value.retryable is True
    assert ei.value.http_status == status


@pytest.mark.parametrize("status", [401, 403])
def test_auth_statuses(status):
    with pytest.raises(AuthError) as ei:
        decode_response(_body({"error": {"message": "bad key"}}), PROVIDER_REGISTRY["openai"], status_code=status)
    assert ei.value.http_status == status


def test_gemini_resource_exhausted_is_retryable():
    body = _body({"error": {"code": 429, "message": "quota", "status": "RESOURCE_EXHAUSTED"}})
    with pytest.raises(ProviderError) as ei:
        decode_response(body, PROVIDER_REGISTRY["gemini"], status_code=200)
    assert ei.value.retryable is True


def test_gemini_block_is_attributed_to_the_profile():
    profile = replace(PROVIDER_REGISTRY["gemini"], id="vertex-proxy")
    body = _body({"promptFeedback": {"blockReason": "SAFETY"}})
    with pytest.raises(ProviderError) as ei:
        decode_response(body, profile)
    assert ei.value.provider == "vertex-proxy"
    assert "SAFETY" in ei.value.message


@pytest.mark.parametrize(
    "body",
    [b"", b"null", b"[]", b"{", b"\xff\xfe", b'{"choices": [null]}', b'{"choices": [{"message": null}]}'],
)
def test_buffered_decode_never_crashes(body):
    with pytest.raises((SchemaError, ProviderError)):
        decode_response(body, PROVIDER_REGISTRY["openai"])
