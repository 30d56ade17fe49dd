import argparse
import json
import sys
from typing import Dict, Iterator, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _iter_sse(response: httpx.Response) -> Iterator[dict]:
    for line in response.iter_lines():
        if not line.startswith("data:"):
            continue
        try:
            yield json.loads(line[len("data:"):].strip())
        except json.JSONDecodeError:
            continue


def _print_event(event: dict, printed: Dict[str, int]) -> None:
    event_type = event.get("event_type")
    payload = event.get("payload") or {}
    message_id = payload.get("message_id")
    if event_type == "message_delta" and message_id:
        content = payload.get("content") or ""
        offset = printed.get(message_id, 0)
        if len(content) > offset:
            sys.stdout.write(content[offset:])
            sys.stdout.flush()
            printed[message_id] = len(content)
    elif event_type == "message_created":
        message = payload.get("message") or {}
        if message.get("sender") == "assistant" and message.get("content"):
            print(f"\n\n{message['content']}")
            printed[message["id"]] = len(message["content"])
    elif event_type == "message_updated":
        fields = payload.get("fields") or {}
        if fields.get("content") and message_id:
            content = fields["content"]
            offset = printed.get(message_id, 0)
            if len(content) > offset:
                sys.stdout.write(content[offset:])
                printed[message_id] = len(content)
        for notice in fields.get("notices") or []:
            print(f"\n[{notice.get('kind')}] {notice.get('text')}")
        for entry in fields.get("multi_search") or []:
            if entry.get("completed"):
                status = "failed" if entry.get("error") else "done"
                print(f"\n[search] {entry.get('query')} ({status})")
    elif event_type in ("page_created", "file_download"):
        print(f"\n[{event_type}] {json.dumps({k: v for k, v in payload.items() if k != 'conversation_id'})}")


def follow_turn(client: httpx.Client, base: str, conversation_id: str, turn_id: str, timeout_s: int) -> int:
    url = _join_url(base, f"/api/conversations/{conversation_id}/events")
    printed: Dict[str, int] = {}
    started = False
    with client.stream("GET", url, timeout=httpx.Timeout(timeout_s, connect=10)) as response:
        if response.status_code >= 400:
            print(f"Failed to follow events: HTTP {response.status_code}")
            return 1
        for event in _iter_sse(response):
            payload = event.get("payload") or {}
            if event.get("event_type") == "turn_started" and payload.get("turn_id") == turn_id:
                started = True
                continue
            if not started:
                continue
            if event.get("event_type") == "turn_completed" and payload.get("turn_id") == turn_id:
                print()
                return 1 if payload.get("error") else 0
            _print_event(event, printed)
    return 0


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {"message": " ".join(args.message), "conversation_id": args.conversation, "model": args.model}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/chat"), json=payload, timeout=30)
        if resp.status_code >= 400:
            print(f"Failed to send message: HTTP {resp.status_code}")
            return 1
        data = resp.json()
        print(f"conversation {data['conversation_id']} turn {data['turn_id']}")
        if args.no_follow:
            return 0
        return follow_turn(client, base, data["conversation_id"], data["turn_id"], args.timeout)


def run_stop(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, f"/api/chat/{args.turn_id}/stop"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to stop turn: HTTP {resp.status_code}")
            return 1
        print(resp.json().get("status"))
    return 0


def run_conversations(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/conversations"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list conversations: HTTP {resp.status_code}")
            return 1
        for convo in resp.json().get("conversations") or []:
            print(f"{convo['id']}  {convo.get('title')}  ({convo.get('message_count', 0)} messages)")
    return 0


def run_messages(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    params = {"rehydrate": "false"} if args.no_rehydrate else {}
    with httpx.Client() as client:
        resp = client.get(
            _join_url(base, f"/api/conversations/{args.conversation_id}/messages"),
            params=params,
            timeout=120,
        )
        if resp.status_code >= 400:
            print(f"Failed to fetch messages: HTTP {resp.status_code}")
            return 1
        for message in resp.json().get("messages") or []:
            print(f"[{message['sender']}] {message.get('content') or ''}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="chatstream CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a message and follow the reply")
    chat.add_argument("--conversation", help="Existing conversation id")
    chat.add_argument("--model", help="Chat model override")
    chat.add_argument("--no-follow", action="store_true", help="Return right after the turn starts")
    chat.add_argument("--timeout", type=int, default=600, help="Max seconds to follow the turn")
    chat.add_argument("message", nargs="+", help="Message text")

    stop = subparsers.add_parser("stop", help="Stop a running turn")
    stop.add_argument("turn_id")

    subparsers.add_parser("conversations", help="List conversations")

    messages = subparsers.add_parser("messages", help="Print a conversation")
    messages.add_argument("conversation_id")
    messages.add_argument("--no-rehydrate", action="store_true", help="Skip restoring missing search results")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "stop":
        return run_stop(args)
    if args.command == "conversations":
        return run_conversations(args)
    if args.command == "messages":
        return run_messages(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
