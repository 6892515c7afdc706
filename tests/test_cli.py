import io
import json

import httpx
import respx
from httpx import Response

from llamune_cli import SessionContext, build_parser, chat_loop, iter_sse_events, render_stream


def sse_body(*events) -> bytes:
    parts = [f"data: {json.dumps(e)}\n\n" for e in events]
    parts.append("data: [DONE]\n\n")
    return "".join(parts).encode("utf-8")


def test_parser_commands():
    parser = build_parser()
    args = parser.parse_args(["chat", "--model", "llama3:8b", "--workspace", "/tmp/proj"])
    assert args.command == "chat"
    assert args.model == "llama3:8b"
    assert args.workspace == "/tmp/proj"
    assert args.session is None

    args = parser.parse_args(["--base-url", "http://other:3000", "sessions", "list", "--limit", "3"])
    assert args.base_url == "http://other:3000"
    assert args.sessions_command == "list"
    assert args.limit == 3

    args = parser.parse_args(["sessions", "new", "--model", "gemma2:9b"])
    assert args.sessions_command == "new"
    assert args.model == "gemma2:9b"


def test_iter_sse_events_stops_at_done():
    lines = ["data: {\"content\": \"a\"}", "", ": keepalive", "data: [DONE]", "data: {\"content\": \"late\"}"]
    assert list(iter_sse_events(lines)) == [{"content": "a"}, {"done_marker": True}]


def test_render_stream_prints_only_new_text():
    out = io.StringIO()
    final = render_stream([{"content": "Hel"}, {"content": "Hello"}, {"done_marker": True}], out)
    assert final == "Hello"
    assert out.getvalue() == "Hello\n"


def test_render_stream_reports_errors():
    out = io.StringIO()
    assert render_stream([{"error": "model missing", "code": "MODEL_UNAVAILABLE"}], out) is None
    assert "model missing" in out.getvalue()


def test_chat_loop_sends_and_resolves_retry():
    ctx = SessionContext(base_url="http://api.test", session_id=7, model="llama3:8b")
    sent = []

    def record(request):
        sent.append((request.url.path, json.loads(request.content.decode("utf-8"))))
        if request.url.path.endswith("/accept"):
            return Response(200, json={"success": True, "sessionId": 7})
        return Response(200, content=sse_body({"content": "hi", "done": True}))

    out = io.StringIO()
    with respx.mock(assert_all_called=False) as respx_mock:
        respx_mock.post(url__startswith="http://api.test/api/chat/").mock(side_effect=record)
        with httpx.Client() as client:
            code = chat_loop(client, ctx, ["hello", "/retry mistral", "/accept", "/quit", "ignored"], out)

    assert code == 0
    assert sent == [
        ("/api/chat/send", {"session_id": 7, "message": "hello", "model": "llama3:8b"}),
        ("/api/chat/retry", {"session_id": 7, "model": "mistral"}),
        ("/api/chat/retry/accept", {"session_id": 7}),
    ]
    assert "hi" in out.getvalue()
    assert "Done." in out.getvalue()
