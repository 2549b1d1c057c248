#!/usr/bin/env python3
"""
Command line front end for the EAS client.

Account settings come from the environment / .env (see easclient/config.py).
"""
import argparse
import logging
import signal
import sys

from easclient.config import settings
from easclient.logging_config import setup_logging
from easclient.models import Account, MailboxRole, PartRequest, SYNC_NEVER, SYNC_PUSH, SyncLookback
from easclient.service import EasSyncService, validate_account
from easclient.status import LoggingStatusCallback, SUCCESS
from easclient.store import SqlSyncStore

logger = logging.getLogger("run_sync")


def open_store():
    store = SqlSyncStore(settings.DATABASE_URL)
    store.create_tables()
    return store


def load_account(store) -> Account:
    """The account for the configured host/user, created on first use"""
    settings.validate()
    account = store.find_account(settings.HOST, settings.USER)
    if account is not None:
        return account
    account = Account(
        id=None,
        host=settings.HOST,
        username=settings.USER,
        password=settings.PASSWORD,
        device_id=settings.DEVICE_ID,
        email_address=settings.EMAIL_ADDRESS or settings.USER,
        use_ssl=settings.USE_SSL,
        trust_all_certs=settings.TRUST_ALL_CERTS,
        lookback=SyncLookback(settings.LOOKBACK),
    )
    store.add_account(account)
    logger.info(f"Created account {account.id} for {account.username}@{account.host}")
    return account


def run_unit(service: EasSyncService) -> int:
    # Ctrl-C stops the service cleanly instead of killing a request half way
    signal.signal(signal.SIGINT, lambda *_: service.stop())
    try:
        service.run()
    except Exception as e:
        print(f"❌ {e}")
        return 1
    return 0


def cmd_validate(args) -> int:
    settings.validate()
    status = validate_account(
        settings.HOST, settings.USER, settings.PASSWORD, settings.DEVICE_ID,
        use_ssl=settings.USE_SSL, trust_all_certs=settings.TRUST_ALL_CERTS,
    )
    if status == SUCCESS:
        print(f"✅ {settings.USER}@{settings.HOST} validated")
        return 0
    print(f"❌ Validation failed with status 0x{status:02x}")
    return 1


def cmd_folders(args) -> int:
    store = open_store()
    account = load_account(store)
    mailbox = store.find_mailbox(account.id, role=MailboxRole.ACCOUNT)
    code = run_unit(EasSyncService(account, mailbox, store, callback=LoggingStatusCallback()))
    if code == 0:
        for collection in store.collections(account.id):
            if collection.role in (MailboxRole.ACCOUNT, MailboxRole.OUTBOX):
                continue
            push = " (push)" if collection.sync_frequency == SYNC_PUSH else ""
            print(f"  {collection.server_id:<12} {collection.role.value:<9} {collection.collection_class}{push}")
    return code


def _mailbox(store, account, server_id):
    if server_id:
        return store.find_mailbox(account.id, server_id=server_id)
    return store.find_mailbox(account.id, role=MailboxRole.INBOX)


def cmd_sync(args) -> int:
    store = open_store()
    account = load_account(store)
    mailbox = _mailbox(store, account, args.folder)
    if mailbox is None:
        print("❌ Folder not found; run 'folders' first")
        return 1
    if args.command == "push":
        mailbox.sync_frequency = SYNC_PUSH
    else:
        # one pass, even for push folders
        mailbox.sync_frequency = SYNC_NEVER
    code = run_unit(EasSyncService(account, mailbox, store, callback=LoggingStatusCallback()))
    if code == 0:
        print(f"✅ {mailbox.server_id}: {len(store.message_ids(mailbox.id))} messages, key {mailbox.sync_key}")
    return code


def cmd_send(args) -> int:
    store = open_store()
    account = load_account(store)
    outbox = store.find_mailbox(account.id, role=MailboxRole.OUTBOX)
    code = run_unit(EasSyncService(account, outbox, store, callback=LoggingStatusCallback()))
    remaining = store.pending_outbox(outbox.id)
    if code == 0:
        print(f"✅ Outbox processed, {len(remaining)} message(s) still pending")
    return code


def cmd_fetch(args) -> int:
    store = open_store()
    account = load_account(store)
    fields = store.lookup_field("attachment", args.attachment_id, ["message_id", "location", "file_name", "size"])
    if fields is None or fields[0] != args.message_id:
        print(f"❌ No attachment {args.attachment_id} on message {args.message_id}")
        return 1
    message_id, location, file_name, size = fields
    mailbox_id = store.lookup_field("message", message_id, ["mailbox_id"])[0]
    mailbox = store.load_collection(mailbox_id)
    mailbox.sync_frequency = SYNC_NEVER

    service = EasSyncService(account, mailbox, store, callback=LoggingStatusCallback())
    service.engine.negotiate()
    request = PartRequest(message_id, location, attachment_id=args.attachment_id, file_name=file_name, size=size,
                          progress_sink=lambda p: print(f"\r  {p}%", end="", flush=True))
    try:
        status = service.attachments.load(request)
    except Exception as e:
        print(f"\n❌ {e}")
        return 1
    print()
    if status != SUCCESS:
        print(f"❌ Download failed with status 0x{status:02x}")
        return 1
    print(f"✅ Saved to {service.attachments.destination(request)}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Exchange ActiveSync client")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("validate", help="Check host and credentials without storing anything")
    subparsers.add_parser("folders", help="Sync the folder hierarchy")

    sync_parser = subparsers.add_parser("sync", help="Sync one folder once (Inbox by default)")
    sync_parser.add_argument("folder", nargs="?", help="Server id of the folder")

    push_parser = subparsers.add_parser("push", help="Sync a folder and keep it current with Ping until interrupted")
    push_parser.add_argument("folder", nargs="?", help="Server id of the folder")

    subparsers.add_parser("send", help="Send pending outbox messages")

    fetch_parser = subparsers.add_parser("fetch", help="Download an attachment")
    fetch_parser.add_argument("message_id", type=int, help="Local message id")
    fetch_parser.add_argument("attachment_id", type=int, help="Local attachment id")

    args = parser.parse_args(argv)
    setup_logging(level=args.log_level)

    commands = {
        "validate": cmd_validate,
        "folders": cmd_folders,
        "sync": cmd_sync,
        "push": cmd_sync,
        "send": cmd_send,
        "fetch": cmd_fetch,
    }
    if args.command not in commands:
        parser.print_help()
        return 2
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
