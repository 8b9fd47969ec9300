import sys

from dotenv import load_dotenv
from loguru import logger

from local_chat_store.app_config import load_json_config, parse_app_config
from local_chat_store.bootstrap import StoreRuntime, bootstrap_runtime
from local_chat_store.storage import StoreError, offline_threshold, prune_offline_messages

_USAGE = "usage: python -m local_chat_store {check|prune|clear|sessions <user_id>}"


def _check(runtime: StoreRuntime, args: list[str]) -> int:
    problems = runtime.store.integrity_check()
    if problems:
        for problem in problems:
            print(f"  - {problem}")
        return 1
    print(f"ok: {runtime.store.db_path} (schema v{runtime.store.schema.version})")
    return 0


def _prune(runtime: StoreRuntime, args: list[str], retention_days: int) -> int:
    removed = prune_offline_messages(runtime.store, offline_threshold(retention_days))
    print(f"pruned {removed} offline message(s) older than {retention_days} day(s)")
    return 0


def _clear(runtime: StoreRuntime, args: list[str]) -> int:
    runtime.store.clear_all_tables()
    print("cleared all sessions and messages")
    return 0


def _sessions(runtime: StoreRuntime, args: list[str]) -> int:
    if not args:
        print(_USAGE)
        return 2
    for session in runtime.sessions.list_sessions(args[0]):
        mode = "offline" if session.is_offline_only else "synced"
        print(f"{session.id}  {session.last_updated}  [{mode}]  {session.title}")
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print(_USAGE)
        return 2
    command, rest = args[0], args[1:]

    app = parse_app_config(load_json_config())
    try:
        runtime = bootstrap_runtime(app)
    except StoreError as ex:
        logger.error(f"Could not open chat store: {ex}")
        return 1

    try:
        if command == "check":
            return _check(runtime, rest)
        if command == "prune":
            return _prune(runtime, rest, app.offline_retention_days)
        if command == "clear":
            return _clear(runtime, rest)
        if command == "sessions":
            return _sessions(runtime, rest)
        print(_USAGE)
        return 2
    except StoreError as ex:
        logger.error(f"{command} failed: {ex}")
        return 1
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
