"""CLI for submitting a local directory of documents as knowledge items."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from wellspring.app import create_app
from wellspring.models import KnowledgeKind, KnowledgeStatus


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest a local directory into an owner's knowledge base")
    parser.add_argument("--owner", dest="owner_id", required=True, help="Owner identifier to ingest into")
    parser.add_argument("path", help="Directory (or single file) to ingest")
    parser.add_argument(
        "--no-recursive",
        dest="recursive",
        action="store_false",
        help="Only ingest files directly inside the directory",
    )
    return parser


def collect_files(target: Path, allowed_extensions: tuple[str, ...], *, recursive: bool = True) -> list[Path]:
    if target.is_file():
        return [target]
    pattern = "**/*" if recursive else "*"
    allowed = {ext.lower() for ext in allowed_extensions}
    return sorted(
        path for path in target.glob(pattern) if path.is_file() and path.suffix.lower() in allowed
    )


async def ingest_paths(app, owner_id: str, paths: list[Path]) -> dict[str, int]:
    manager = app.state.services.manager
    item_ids = []
    for path in paths:
        item = await manager.submit(owner_id, KnowledgeKind.FILE, path.read_bytes(), path.name)
        item_ids.append(item.id)
    await manager.wait_idle()

    summary = {"synced": 0, "error": 0, "chunks": 0}
    for item_id in item_ids:
        item = manager.get(owner_id, item_id)
        if item.status is KnowledgeStatus.SYNCED:
            summary["synced"] += 1
            summary["chunks"] += item.chunk_count
        else:
            summary["error"] += 1
            print(f"  failed: {item.name}: {item.error_detail}", file=sys.stderr)
    await manager.shutdown()
    return summary


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    app = create_app()
    settings = app.state.services.settings
    target = Path(args.path).expanduser().resolve()
    if not target.exists():  # pragma: no cover - CLI validation
        parser.error(f"Path '{args.path}' does not exist")
        return 1

    paths = collect_files(target, settings.allowed_extensions, recursive=args.recursive)
    if not paths:
        print(f"No supported files found under {target}")
        return 1

    summary = asyncio.run(ingest_paths(app, args.owner_id, paths))
    chunks = summary["chunks"]
    print(
        f"Ingested {summary['synced']}/{len(paths)} file{'s' if len(paths) != 1 else ''} "
        f"({chunks} chunk{'s' if chunks != 1 else ''}), {summary['error']} failed"
    )
    return 0 if summary["error"] == 0 else 2


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
