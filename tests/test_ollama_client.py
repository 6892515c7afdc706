import json

import pytest
import respx
from httpx import ConnectError, Response

from llamune.llm import ModelStreamInterrupted, ModelTransportError, OllamaClient, format_size


def ndjson(*records) -> bytes:
    return "".join(json.dumps(r) + "\n" for r in records).encode("utf-8")


async def collect(client: OllamaClient, **kwargs):
    frames = []
    async for frame in client.chat_stream("test-model", [{"role": "user", "content": "hi"}], **kwargs):
        frames.append(frame)
    return frames


@pytest.mark.asyncio
async def test_list_models_hits_tags_endpoint():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://ollama.test/api/tags").mock(
                return_value=Response(200, json={"models": [{"name": "gemma2:9b", "size": 5_000_000_000}]})
            )
            models = await client.list_models()
            assert models[0]["name"] == "gemma2:9b"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_stream_accumulates_content_and_skips_bad_lines():
    client = OllamaClient("http://ollama.test")
    body = ndjson(
        {"message": {"role": "assistant", "content": "Hel"}, "done": False},
    ) + b"not json\n" + ndjson(
        {"message": {"role": "assistant", "content": "lo"}, "done": False},
        {"message": {"role": "assistant", "content": ""}, "done": True},
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body))
            frames = await collect(client)
    finally:
        await client.close()
    assert [f.content for f in frames] == ["Hel", "Hello", "Hello"]
    assert frames[-1].done is True
    assert not any(f.done for f in frames[:-1])


@pytest.mark.asyncio
async def test_chat_stream_payload_carries_tools_only_when_given():
    client = OllamaClient("http://ollama.test")
    captured = []

    def handler(request):
        captured.append(json.loads(request.content.decode("utf-8")))
        return Response(200, content=ndjson({"message": {"content": "ok"}, "done": True}))

    tools = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(side_effect=handler)
            await collect(client)
            await collect(client, tools=tools)
    finally:
        await client.close()
    assert captured[0]["stream"] is True
    assert "tools" not in captured[0]
    assert captured[1]["tools"] == tools


@pytest.mark.asyncio
async def test_chat_stream_splits_inline_thinking():
    client = OllamaClient("http://ollama.test")
    body = ndjson(
        {"message": {"content": "<think>count"}, "done": False},
        {"message": {"content": " carefully</think>"}, "done": False},
        {"message": {"content": "4"}, "done": True},
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body))
            frames = await collect(client)
    finally:
        await client.close()
    assert frames[0].content == ""
    assert frames[0].thinking == "count"
    assert frames[-1].content == "4"
    assert frames[-1].thinking == "count carefully"


@pytest.mark.asyncio
async def test_chat_stream_merges_backend_thinking_field():
    client = OllamaClient("http://ollama.test")
    body = ndjson(
        {"message": {"content": "", "thinking": "hmm"}, "done": False},
        {"message": {"content": "Yes"}, "done": True},
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body))
            frames = await collect(client)
    finally:
        await client.close()
    assert frames[-1].content == "Yes"
    assert frames[-1].thinking == "hmm"


@pytest.mark.asyncio
async def test_chat_stream_parses_tool_calls_with_string_arguments():
    client = OllamaClient("http://ollama.test")
    body = ndjson(
        {
            "message": {
                "content": "",
                "tool_calls": [{"function": {"name": "read_file", "arguments": "{\"path\": \"README.md\"}"}}],
            },
            "done": False,
        },
        {"message": {"content": ""}, "done": True},
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body))
            frames = await collect(client)
    finally:
        await client.close()
    assert frames[-1].tool_calls[0].name == "read_file"
    assert frames[-1].tool_calls[0].arguments == {"path": "README.md"}


@pytest.mark.asyncio
async def test_chat_stream_parses_final_line_without_newline():
    client = OllamaClient("http://ollama.test")
    body = json.dumps({"message": {"content": "done"}, "done": True}).encode("utf-8")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body))
            frames = await collect(client)
    finally:
        await client.close()
    assert frames[-1].content == "done"
    assert frames[-1].done is True


@pytest.mark.asyncio
async def test_chat_stream_http_error_is_transport_error():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(
                return_value=Response(404, json={"error": "model 'missing' not found"})
            )
            with pytest.raises(ModelTransportError) as excinfo:
                await collect(client)
    finally:
        await client.close()
    assert "not found" in str(excinfo.value)
    assert excinfo.value.code == "MODEL_UNAVAILABLE"


@pytest.mark.asyncio
async def test_chat_stream_connect_error_is_transport_error():
    client = OllamaClient("http://ollama.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(side_effect=ConnectError("refused"))
            with pytest.raises(ModelTransportError):
                await collect(client)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_stream_without_done_is_interrupted():
    client = OllamaClient("http://ollama.test")
    body = ndjson({"message": {"content": "partial"}, "done": False})
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body))
            with pytest.raises(ModelStreamInterrupted) as excinfo:
                await collect(client)
    finally:
        await client.close()
    assert excinfo.value.code == "STREAM_ERROR"


@pytest.mark.asyncio
async def test_chat_stream_error_record_interrupts():
    client = OllamaClient("http://ollama.test")
    body = ndjson({"message": {"content": "a"}, "done": False}, {"error": "out of memory"})
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(return_value=Response(200, content=body))
            with pytest.raises(ModelStreamInterrupted, match="out of memory"):
                await collect(client)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_chat_returns_message_content():
    client = OllamaClient("http://ollama.test")
    captured = {}

    def handler(request):
        captured["json"] = json.loads(request.content.decode("utf-8"))
        return Response(200, json={"message": {"role": "assistant", "content": "ok"}, "done": True})

    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("http://ollama.test/api/chat").mock(side_effect=handler)
            text = await client.chat(
                "test-model",
                [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}, {"role": "bogus", "content": "x"}],
            )
    finally:
        await client.close()
    assert text == "ok"
    assert captured["json"]["stream"] is False
    assert [m["role"] for m in captured["json"]["messages"]] == ["system", "user"]


def test_format_size():
    assert format_size(0) == "0.0 B"
    assert format_size(1536) == "1.5 KB"
    assert format_size(5 * 1024 ** 3) == "5.0 GB"
