import argparse
import asyncio
import json
import os
import sys
from typing import Optional

from config import load_settings
from errors import AppError
from logging_config import setup_logging
from services import create_services
from settings_schema import TrackerSettings


def _settings(config_path: Optional[str], db_path: Optional[str]) -> TrackerSettings:
    settings = load_settings(config_path)
    if db_path:
        settings = settings.model_copy(update={"db_path": db_path})
    return settings


async def backup_db(settings: TrackerSettings, out: Optional[str] = None) -> str:
    services = await create_services(settings)
    try:
        return await services.backups.create_backup(out)
    finally:
        await services.close()


async def restore_db(settings: TrackerSettings, src: str) -> None:
    services = await create_services(settings)
    try:
        await services.backups.restore_backup(src)
    finally:
        await services.close()


async def db_stats(settings: TrackerSettings) -> dict:
    services = await create_services(settings)
    try:
        return await services.db.get_stats()
    finally:
        await services.close()


async def verify_db(settings: TrackerSettings) -> bool:
    services = await create_services(settings)
    try:
        return await services.db.verify_integrity()
    finally:
        await services.close()


async def optimize_db(settings: TrackerSettings, vacuum: bool = False) -> None:
    services = await create_services(settings)
    try:
        await services.db.optimize()
        if vacuum:
            await services.db.vacuum()
    finally:
        await services.close()


async def export_data(settings: TrackerSettings, fmt: str, output_dir: str = ".") -> str:
    services = await create_services(settings)
    try:
        if fmt == "csv":
            content = await services.backups.export_sets_csv()
            path = os.path.join(output_dir, "sets.csv")
        else:
            content = await services.backups.export_exercises_json()
            path = os.path.join(output_dir, "exercises.json")
    finally:
        await services.close()
    os.makedirs(output_dir, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    return path


def serve(settings: TrackerSettings, host: str, port: int) -> None:
    import uvicorn

    from rest_api import TrackerAPI

    uvicorn.run(TrackerAPI(settings).app, host=host, port=port, log_config=None)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Exercise tracker utility commands")
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--db", default=None, help="Database path (overrides settings)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    bkp = sub.add_parser("backup")
    bkp.add_argument("--out", default=None)

    rst = sub.add_parser("restore")
    rst.add_argument("--in", dest="src", required=True)

    sub.add_parser("stats")
    sub.add_parser("verify")

    opt = sub.add_parser("optimize")
    opt.add_argument("--vacuum", action="store_true")

    exp = sub.add_parser("export")
    exp.add_argument("--fmt", choices=["csv", "json"], default="csv")
    exp.add_argument("--out", default=".")

    srv = sub.add_parser("serve")
    srv.add_argument("--host", default="127.0.0.1")
    srv.add_argument("--port", type=int, default=8000)

    args = parser.parse_args(argv)
    settings = _settings(args.config, args.db)
    setup_logging(settings.log_level, settings.log_file)

    try:
        if args.cmd == "backup":
            print(asyncio.run(backup_db(settings, args.out)))
        elif args.cmd == "restore":
            asyncio.run(restore_db(settings, args.src))
            print(f"Restored {settings.db_path} from {args.src}")
        elif args.cmd == "stats":
            print(json.dumps(asyncio.run(db_stats(settings)), indent=2))
        elif args.cmd == "verify":
            ok = asyncio.run(verify_db(settings))
            print("ok" if ok else "integrity check failed")
            return 0 if ok else 1
        elif args.cmd == "optimize":
            asyncio.run(optimize_db(settings, args.vacuum))
        elif args.cmd == "export":
            print(asyncio.run(export_data(settings, args.fmt, args.out)))
        elif args.cmd == "serve":
            serve(settings, args.host, args.port)
    except AppError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
