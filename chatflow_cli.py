import argparse
import asyncio
import sys
from typing import List, Optional

import httpx

from chatflow.agent import AgentRunner
from chatflow.config import load_settings
from chatflow.consumer import answer_text
from chatflow.db import Database
from chatflow.store import open_store


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


async def _chat(args: argparse.Namespace) -> int:
    settings = load_settings()
    store = await open_store(settings, args.db)
    try:
        async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
            runner = AgentRunner.from_settings(store, client, settings)
            item = await runner.submit(
                args.query,
                mode=args.mode,
                thread_id=args.thread,
                use_web_search=args.web_search or None,
                show_suggestions=False if args.no_suggestions else None,
            )
            await runner.wait_for_titles()
    finally:
        await store.close()
    if item is None:
        print("No answer received.")
        return 1
    if item.status != "COMPLETED":
        print(f"[{item.status}] {item.error or 'No answer received.'}")
        return 1
    print(answer_text(item.answer))
    if item.suggestions:
        print("\nFollow-up ideas:")
        for suggestion in item.suggestions:
            print(f"- {suggestion}")
    print(f"\n(thread {item.thread_id}, mode {item.mode})")
    return 0


def run_chat(args: argparse.Namespace) -> int:
    return asyncio.run(_chat(args))


async def _list_threads(args: argparse.Namespace) -> int:
    db = Database(args.db or load_settings().client_database_path)
    await db.init()
    threads = await db.list_threads()
    if not threads:
        print("No threads.")
        return 0
    for thread in threads:
        count = await db.count_thread_items(thread.id)
        pin = "*" if thread.pinned else " "
        print(f"{pin} {thread.id}  {thread.updated_at:%Y-%m-%d %H:%M}  {count:>3} items  {thread.title}")
    return 0


def run_threads_list(args: argparse.Namespace) -> int:
    return asyncio.run(_list_threads(args))


async def _delete_thread(args: argparse.Namespace) -> int:
    store = await open_store(load_settings(), args.db)
    try:
        if store.get_thread(args.thread_id) is None:
            print(f"Thread {args.thread_id} not found.")
            return 1
        await store.delete_thread(args.thread_id)
    finally:
        await store.close()
    print(f"Deleted thread {args.thread_id}.")
    return 0


def run_threads_delete(args: argparse.Namespace) -> int:
    return asyncio.run(_delete_thread(args))


def run_modes_select(args: argparse.Namespace) -> int:
    payload = {"query": args.query, "hasImage": args.image}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/modes/select"), json=payload, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to select mode: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    print(f"Heuristic: {data.get('mode')} ({data.get('model')})")
    print(f"Reason: {data.get('reason')}")
    if data.get("error"):
        print(f"Unavailable: {data['error']}")
        return 1
    if data.get("resolvedMode") != data.get("mode"):
        print(f"Runs as: {data.get('resolvedMode')} ({data.get('resolvedReason')})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="chatflow CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--db", default=None, help="Local conversation database (default: client_database_path)")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Ask a question")
    chat.add_argument("query", help="Question to send")
    chat.add_argument("--mode", default=None, help="Chat mode (default: last used, else auto)")
    chat.add_argument("--thread", default=None, help="Continue an existing thread")
    chat.add_argument("--web-search", action="store_true", help="Enable web search")
    chat.add_argument("--no-suggestions", action="store_true", help="Skip follow-up suggestions")
    chat.add_argument("--timeout", type=float, default=300.0, help="Request timeout seconds")

    threads = subparsers.add_parser("threads", help="Local thread history")
    threads_sub = threads.add_subparsers(dest="threads_cmd")
    threads_sub.add_parser("list", help="List threads")
    delete = threads_sub.add_parser("delete", help="Delete a thread and its items")
    delete.add_argument("thread_id")

    modes = subparsers.add_parser("modes", help="Chat modes")
    modes_sub = modes.add_subparsers(dest="modes_cmd")
    select = modes_sub.add_parser("select", help="Preview automatic mode selection")
    select.add_argument("query")
    select.add_argument("--image", action="store_true", help="Query comes with an image")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "threads" and args.threads_cmd == "list":
        return run_threads_list(args)
    if args.command == "threads" and args.threads_cmd == "delete":
        return run_threads_delete(args)
    if args.command == "modes" and args.modes_cmd == "select":
        return run_modes_select(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
