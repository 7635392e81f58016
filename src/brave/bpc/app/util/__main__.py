import argparse
import asyncio
import logging

from cryptography.fernet import Fernet
import redis.asyncio as redis

from brave.bpc.app.config import RECONCILE_QUEUE, Settings
from brave.bpc.app.tasks import ReconcileQueue, utc_timestamp
from brave.bpc.esi.scopes import OPERATION_SCOPES

logger = logging.getLogger(__name__)


async def genCryptoKey() -> None:
    print(Fernet.generate_key().decode("utf-8"))


async def listScopes() -> None:
    for operation, scopes in sorted(OPERATION_SCOPES.items()):
        print(f"{operation}: {' '.join(sorted(scopes))}")


async def scheduleReconcile(corporation_id: int) -> None:
    """Queue a reconciliation of ``corporation_id`` for the next tick of any worker."""
    settings = Settings()  # type: ignore
    redis_client = redis.Redis.from_url(str(settings.redis_dsn))
    try:
        queue = ReconcileQueue(redis_client, RECONCILE_QUEUE, settings.worker_id)
        await queue.schedule(corporation_id, utc_timestamp())
        print(f"Scheduled reconciliation of corporation {corporation_id}")
    finally:
        await redis_client.aclose()


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="bpcutil", description="BPC utilities")

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-crypto", help="Generate an encryption key")
    _ = subparsers.add_parser("list-scopes", help="List the scopes each operation requires")
    schedule = subparsers.add_parser(
        "schedule-reconcile", help="Queue a blueprint reconciliation now"
    )
    schedule.add_argument("corporation_id", type=int, help="The corporation to reconcile.")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-crypto":
        await genCryptoKey()
    elif command == "list-scopes":
        await listScopes()
    elif command == "schedule-reconcile":
        await scheduleReconcile(args["corporation_id"])


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
