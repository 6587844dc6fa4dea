"""
Simple interactive CLI for chatsync.

Demonstrates:
- selecting a conversation and watching the sync state machine
- live message ingestion and delivery receipts
- sending with the offline outbound queue
- cached analytics reads
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from chatsync import ChatSyncService, Conversation, ServiceConfig, SyncConfig
from chatsync.connection.monitor import ConnectionUpdate
from chatsync.exceptions import ChatSyncError
from chatsync.normalize import content_preview
from chatsync.types import OutboundItem, StoreChange, SyncSession


async def _ainput(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


def _short(s: str | None, n: int = 80) -> str:
    if not s:
        return ""
    return s if len(s) <= n else (s[: n - 3] + "...")


async def main() -> None:
    ap = argparse.ArgumentParser(prog="simple_cli.py")
    ap.add_argument("--api", default="http://localhost:8080", help="API base url")
    ap.add_argument("--live", default="ws://localhost:8080/ws", help="live channel url")
    ap.add_argument("--user", required=True, help="signed-in user id")
    ap.add_argument("--token", default=None, help="bearer token")
    ap.add_argument("--data", default="./chatsync-data", help="cache/queue folder")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = ServiceConfig(
        sync=SyncConfig(
            api_base_url=args.api, live_url=args.live, user_id=args.user, auth_token=args.token
        ),
        storage_dir=Path(args.data).expanduser().resolve(),
    )
    service = await ChatSyncService.create(config)

    async def on_connection(update: ConnectionUpdate) -> None:
        print(f"connection: {update.current}")

    async def on_sync(session: SyncSession) -> None:
        print(f"[sync] {session.conversation_id} {session.state} {session.progress_percent}%")
        if session.details:
            print(f"       {session.details}")

    async def on_failed(item: OutboundItem) -> None:
        print(f"\n[send failed] {item.draft.client_id}: {item.last_error}")

    async def on_auth_error(exc: Exception) -> None:
        print(f"\n[auth] {exc}; sign in again")

    service.on("connection.update", on_connection)
    service.on("sync.update", on_sync)
    service.on("sync.warning", lambda cid, exc: print(f"[warn] {cid}: live updates off ({exc})"))
    service.on("outbound.failed", on_failed)
    service.on("auth.error", on_auth_error)

    if not await service.start():
        print("live channel unavailable; retrying in the background")

    current: str | None = None
    unsubscribe = None

    def on_change(change: StoreChange) -> None:
        if change.kind != "append":
            return
        for mid in change.message_ids:
            msg = service.store.find_message(change.conversation_id, mid)
            if msg and not msg.is_from_me:
                print(f"\n[rx] {msg.sender_id}: {_short(content_preview(msg.content))}")

    print(
        "\nCommands: open <id>, close, retry, history [n], older, new, send <text>, read, "
        "queue, cancel <client_id>, priority [today|week|month], report, charts, quit\n"
    )

    while True:
        try:
            line = (await _ainput("> ")).strip()
        except (EOFError, KeyboardInterrupt):
            line = "quit"

        if not line:
            continue

        cmd, *rest = line.split(" ", 1)
        cmd = cmd.lower()
        argstr = rest[0] if rest else ""

        if cmd in ("quit", "exit"):
            break

        try:
            if cmd == "open" and argstr:
                if unsubscribe:
                    unsubscribe()
                current = argstr.strip()
                unsubscribe = service.subscribe(current, on_change)
                await service.select_conversation(Conversation(id=current, membership="join"))
                continue

            if current is None:
                print("open a conversation first")
                continue

            if cmd == "close":
                await service.deselect_conversation(current)
                if unsubscribe:
                    unsubscribe()
                current, unsubscribe = None, None
            elif cmd == "history":
                n = int(argstr) if argstr else 20
                for m in service.get_messages(current, limit=n):
                    who = "me" if m.is_from_me else m.sender_id
                    print(f"- [{m.delivery_status}] {who}: {_short(content_preview(m.content))}")
            elif cmd == "older":
                print(f"loaded {await service.load_older(current)} older messages")
            elif cmd == "new":
                print(f"fetched {await service.fetch_new_messages(current)} new messages")
            elif cmd == "retry":
                await service.retry_sync(current)
            elif cmd == "send" and argstr:
                client_id = await service.send_message(current, argstr)
                print(f"queued {client_id}")
            elif cmd == "read":
                ids = [m.id for m in service.get_messages(current) if not m.is_from_me]
                service.mark_read(current, ids)
            elif cmd == "queue":
                for item in service.pending_outbound():
                    print(f"- {item.draft.client_id} {item.status} retries={item.retry_count}")
            elif cmd == "cancel" and argstr:
                print("cancelled" if await service.cancel_outbound(argstr.strip()) else "unknown")
            elif cmd == "priority":
                print(await service.priority_overview(current, argstr.strip() or "today"))
            elif cmd == "report":
                print(await service.daily_report(current))
            elif cmd == "charts":
                print(await service.chart_series(current))
            else:
                print("unknown command")
        except ChatSyncError as e:
            print(f"error: {e}")

    await service.close()


if __name__ == "__main__":
    asyncio.run(main())
