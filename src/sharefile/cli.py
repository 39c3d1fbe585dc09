from __future__ import annotations

import argparse
import json
import mimetypes
import shutil
from pathlib import Path

from .audit import AuditLog
from .config import LOG_QUERY_LIMIT, get_upload_dir
from .db import get_connection, init_db
from .files import create_file, new_stored_name
from .logging_utils import configure_logging


def add_file(path: str, password: str, download_limit: int | None = None, name: str | None = None) -> dict:
    source = Path(path)
    if not source.is_file():
        raise ValueError(f"Not a file: {path}")
    if not password:
        raise ValueError("Password is required")

    upload_dir = Path(get_upload_dir())
    upload_dir.mkdir(parents=True, exist_ok=True)
    stored_name = new_stored_name()
    target = upload_dir / stored_name
    shutil.copyfile(source, target)

    mime_type, _ = mimetypes.guess_type(source.name)
    try:
        with get_connection() as conn:
            record = create_file(
                conn,
                original_name=name or source.name,
                stored_name=stored_name,
                password=password,
                file_size=target.stat().st_size,
                mime_type=mime_type,
                download_limit=download_limit,
            )
    except BaseException:
        target.unlink(missing_ok=True)
        raise
    return record.public_info()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="sharefile")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("init-db")

    add = sub.add_parser("add-file")
    add.add_argument("path")
    add.add_argument("--password", required=True)
    add.add_argument("--limit", type=int, default=None)
    add.add_argument("--name", default=None)

    logs = sub.add_parser("logs")
    logs.add_argument("--file-id", default=None)
    logs.add_argument("--limit", type=int, default=LOG_QUERY_LIMIT)

    serve = sub.add_parser("serve")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)

    args = parser.parse_args(argv)
    configure_logging()

    if args.command == "init-db":
        init_db()
        print("Database initialized")
        return

    if args.command == "add-file":
        init_db()
        try:
            info = add_file(args.path, args.password, download_limit=args.limit, name=args.name)
        except ValueError as exc:
            parser.error(str(exc))
        print(json.dumps(info, indent=2))
        return

    if args.command == "logs":
        for entry in AuditLog().query(file_id=args.file_id, limit=args.limit):
            print(json.dumps(entry.to_json()))
        return

    if args.command == "serve":
        from .webapp import create_app

        create_app().run(host=args.host, port=args.port, threaded=True)
        return

    parser.print_help()


if __name__ == "__main__":
    main()
