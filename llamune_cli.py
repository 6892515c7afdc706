import argparse
import json
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, TextIO

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:3000"


@dataclass
class SessionContext:
    base_url: str
    session_id: Optional[int] = None
    model: Optional[str] = None


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def iter_sse_events(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Parse `data:` lines; `[DONE]` becomes {"done_marker": True}."""
    for line in lines:
        if not line.startswith("data:"):
            continue
        chunk = line[len("data:") :].strip()
        if chunk == "[DONE]":
            yield {"done_marker": True}
            return
        try:
            event = json.loads(chunk)
        except ValueError:
            continue
        if isinstance(event, dict):
            yield event


def render_stream(events: Iterable[Dict[str, Any]], out: TextIO) -> Optional[str]:
    """Print content as it grows; returns the final content or None on error."""
    shown = ""
    final: Optional[str] = None
    for event in events:
        if event.get("done_marker"):
            break
        if "error" in event:
            out.write(f"\n[error] {event.get('error')} ({event.get('code')})\n")
            return None
        content = str(event.get("content") or "")
        if content.startswith(shown):
            out.write(content[len(shown) :])
        else:
            out.write("\n" + content)
        out.flush()
        shown = content
        final = content
    out.write("\n")
    return final


def stream_turn(client: httpx.Client, ctx: SessionContext, path: str, payload: dict, out: TextIO) -> Optional[str]:
    with client.stream("POST", _join_url(ctx.base_url, path), json=payload, timeout=None) as resp:
        if resp.status_code >= 400:
            resp.read()
            out.write(f"Request failed: HTTP {resp.status_code} {resp.text}\n")
            return None
        return render_stream(iter_sse_events(resp.iter_lines()), out)


def create_session(client: httpx.Client, ctx: SessionContext, workspace: Optional[str] = None, system_prompt: Optional[str] = None) -> SessionContext:
    payload: Dict[str, Any] = {"model": ctx.model}
    if workspace:
        payload["workspace_root"] = workspace
    if system_prompt:
        payload["system_prompt"] = system_prompt
    resp = client.post(_join_url(ctx.base_url, "/api/sessions"), json=payload, timeout=10)
    resp.raise_for_status()
    session = resp.json()["session"]
    return SessionContext(base_url=ctx.base_url, session_id=session["id"], model=session["model"])


def run_models(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/models"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list models: HTTP {resp.status_code}")
            return 1
        models = resp.json().get("models") or []
    if not models:
        print("No models available. Pull a model with Ollama first.")
        return 1
    for m in models:
        print(f"{m.get('name')} ({m.get('sizeFormatted')})")
    return 0


def run_sessions(args: argparse.Namespace) -> int:
    if args.sessions_command == "new":
        ctx = SessionContext(base_url=args.base_url, model=args.model)
        with httpx.Client() as client:
            try:
                ctx = create_session(client, ctx, workspace=args.workspace, system_prompt=args.system)
            except httpx.HTTPError as exc:
                print(f"Failed to create session: {exc}")
                return 1
        print(f"Created session #{ctx.session_id} with {ctx.model}")
        return 0
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/sessions"), params={"limit": getattr(args, "limit", 10)}, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list sessions: HTTP {resp.status_code}")
            return 1
        sessions = resp.json().get("sessions") or []
    if not sessions:
        print("No sessions yet.")
    for s in sessions:
        title = s.get("title") or "(untitled)"
        print(f"#{s['id']} {title} [{s.get('model')}] {s.get('message_count', 0)} messages")
    return 0


def chat_loop(client: httpx.Client, ctx: SessionContext, lines: Iterable[str], out: TextIO) -> int:
    """Interactive shell; slash commands act on the latest turn."""
    for raw in lines:
        text = raw.strip()
        if not text:
            continue
        if text in ("/quit", "/exit"):
            break
        if text.startswith("/retry"):
            parts = text.split(maxsplit=1)
            payload: Dict[str, Any] = {"session_id": ctx.session_id}
            if len(parts) > 1:
                payload["model"] = parts[1]
            stream_turn(client, ctx, "/api/chat/retry", payload, out)
            out.write("Use /accept to keep the new answer or /reject to keep the original.\n")
            continue
        if text in ("/accept", "/reject"):
            resp = client.post(
                _join_url(ctx.base_url, f"/api/chat/retry/{text[1:]}"),
                json={"session_id": ctx.session_id},
                timeout=10,
            )
            ok = resp.status_code < 400 and resp.json().get("success")
            out.write("Done.\n" if ok else "Nothing to resolve.\n")
            continue
        payload = {"session_id": ctx.session_id, "message": text}
        if ctx.model:
            payload["model"] = ctx.model
        stream_turn(client, ctx, "/api/chat/send", payload, out)
    return 0


def _stdin_lines(prompt: str) -> Iterator[str]:
    while True:
        try:
            yield input(prompt)
        except EOFError:
            return


def run_chat(args: argparse.Namespace) -> int:
    ctx = SessionContext(base_url=args.base_url, session_id=args.session, model=args.model)
    with httpx.Client() as client:
        if ctx.session_id is None:
            try:
                ctx = create_session(client, ctx, workspace=args.workspace, system_prompt=args.system)
            except httpx.HTTPError as exc:
                print(f"Failed to create session: {exc}")
                return 1
            print(f"Started session #{ctx.session_id} with {ctx.model}")
        try:
            return chat_loop(client, ctx, _stdin_lines("> "), sys.stdout)
        except KeyboardInterrupt:
            return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Llamune CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("models", help="List available models")

    sessions = subparsers.add_parser("sessions", help="List or create sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_command")
    sessions_list = sessions_sub.add_parser("list", help="List recent sessions")
    sessions_list.add_argument("--limit", type=int, default=10, help="Max sessions to show")
    sessions_new = sessions_sub.add_parser("new", help="Create a session")
    sessions_new.add_argument("--model", default=None, help="Model to use")
    sessions_new.add_argument("--workspace", default=None, help="Directory the model may inspect")
    sessions_new.add_argument("--system", default=None, help="System prompt")

    chat = subparsers.add_parser("chat", help="Interactive chat")
    chat.add_argument("--session", type=int, default=None, help="Resume an existing session")
    chat.add_argument("--model", default=None, help="Model to use")
    chat.add_argument("--workspace", default=None, help="Directory the model may inspect")
    chat.add_argument("--system", default=None, help="System prompt for a new session")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "models":
        return run_models(args)
    if args.command == "sessions":
        return run_sessions(args)
    if args.command == "chat":
        return run_chat(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
