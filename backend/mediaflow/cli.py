import argparse
import asyncio
import json
import uuid

from mediaflow.core.config import settings
from mediaflow.core.logging_config import configure_logging
from mediaflow.db.session import SessionLocal
from mediaflow.services import orphan_cleanup, provisional_uploads, variant_generation


def _parse_asset_id(raw: str | None) -> uuid.UUID | None:
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise SystemExit(f"Invalid asset id: {raw}")


async def run_cleanup() -> dict:
    report = await orphan_cleanup.run_cleanup()
    return report.as_dict()


async def upload_stats() -> dict[str, int]:
    async with SessionLocal() as session:
        return await provisional_uploads.status_counts(session)


async def generate_variants(*, force: bool, asset_id: uuid.UUID | None) -> dict:
    report = await variant_generation.run_variant_pass(force=force, asset_id=asset_id)
    return report.as_dict()


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _add_lifecycle_commands(subparsers) -> None:
    subparsers.add_parser("cleanup", help="Run one provisional-upload cleanup pass")
    subparsers.add_parser("stats", help="Print provisional uploads by status")


def _add_variant_commands(subparsers) -> None:
    generate = subparsers.add_parser("generate-variants", help="Generate missing image variants")
    generate.add_argument("--force", action="store_true", help="Regenerate variants even when all are present")
    generate.add_argument("--id", dest="asset_id", help="Only process this media asset id")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Media lifecycle maintenance")
    subparsers = parser.add_subparsers(dest="command")
    _add_lifecycle_commands(subparsers)
    _add_variant_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "cleanup":
        _print_json(asyncio.run(run_cleanup()))
        return True

    if args.command == "stats":
        _print_json(asyncio.run(upload_stats()))
        return True

    if args.command == "generate-variants":
        asset_id = _parse_asset_id(args.asset_id)
        _print_json(asyncio.run(generate_variants(force=bool(args.force), asset_id=asset_id)))
        return True

    return False


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
