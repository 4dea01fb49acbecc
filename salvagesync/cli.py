from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import Settings, build_settings, validate_sync_paths
from .errors import SetupError
from .filetree import FileTree
from .hashitem import GROUP_BY_CHOICES, GROUP_BY_DIGEST, diff_hash_trees, read_hash_tree
from .hashtree import HashTreeBuilder, hasher_factory
from .listing import default_lister
from .logs import setup_logger
from .scanner import open_file_tree
from .store import DigestStore, HashTreeStore
from .sync import IgnoreMatcher, surrogate_safe, sync_trees

EXIT_SETUP_ERROR = 2


# -------------------------
# Shared options
# -------------------------

def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", type=Path, default=None, help="JSON config file (default ~/.salvagesync/config.json).")
    p.add_argument("--log-dir", type=Path, default=None, help="Also write a plain log file into this directory.")
    p.add_argument("--max-depth", type=int, default=0, help="Recursion depth limit, 0 means unlimited.")
    p.add_argument("--max-open-files", type=int, default=None, help="Bound on concurrently open directories / copy handles.")
    p.add_argument("--watchdog-timeout", type=float, default=None, help="Seconds without a new name before a listing is abandoned.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")


def _settings(args: argparse.Namespace, **overrides) -> Settings:
    return build_settings(
        args.config,
        max_open_files=args.max_open_files,
        watchdog_timeout_sec=args.watchdog_timeout,
        log_dir=args.log_dir,
        **overrides,
    )


def _logger(settings: Settings, args: argparse.Namespace) -> logging.Logger:
    return setup_logger(settings.log_dir, level=logging.DEBUG if args.verbose else logging.INFO)


def _open_tree(
    settings: Settings,
    root: str,
    max_depth: int,
    snapshot: Optional[str] = None,
    ledger: Optional[str] = None,
) -> FileTree:
    return open_file_tree(
        root,
        snapshot_path=Path(snapshot) if snapshot else None,
        ledger_path=Path(ledger) if ledger else None,
        max_depth=max_depth,
        max_open_files=settings.max_open_files,
        lister=default_lister(timeout=settings.watchdog_timeout_sec),
        checkpoint_interval_sec=settings.checkpoint_interval_sec,
    )


# -------------------------
# salvagesync-sync
# -------------------------

def parse_sync_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="salvagesync-sync",
        description="Copy files whose size differs from SRC to DST, skipping anything present in EXCLUDE dirs.",
    )
    p.add_argument("src", help="Directory to copy from.")
    p.add_argument("dst", help="Directory to copy to.")
    p.add_argument("exclude", nargs="*", help="Directories whose files must not be copied.")
    p.add_argument("--dry-run", action="store_true", help="Do not copy anything.")
    p.add_argument("--src-filetree-cache", default=None, help="Enable the source file tree cache at this path.")
    p.add_argument("--src-broken-files", default=None, help="Enable the list of broken files at this path.")
    p.add_argument("--dst-filetree-cache", default=None, help="Enable the destination (and exclude dirs) file tree cache.")
    p.add_argument("--ignore", action="append", default=[], metavar="PATTERN", help="Gitignore-style pattern to skip (repeatable).")
    _add_common_args(p)
    return p.parse_args(argv)


def exclude_cache_path(dst_cache: Optional[str], exclude_dir: str) -> Optional[str]:
    if not dst_cache:
        return None
    return dst_cache + "-" + exclude_dir.replace("/", "-")


def sync_main(argv: Optional[list[str]] = None) -> int:
    args = parse_sync_args(sys.argv[1:] if argv is None else argv)
    try:
        settings = _settings(args)
    except SetupError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    logger = _logger(settings, args)

    try:
        src, dst = validate_sync_paths(Path(args.src), Path(args.dst))
        logger.info("Source     : %s", src)
        logger.info("Destination: %s", dst)

        src_tree = _open_tree(settings, str(src), args.max_depth, args.src_filetree_cache, args.src_broken_files)
        if args.dry_run and not dst.exists():
            # nothing to scan and nothing may be created
            logger.info("Destination does not exist, dry run treats it as empty")
            dst_tree = FileTree(str(dst))
            dst_tree.complete()
        else:
            dst.mkdir(parents=True, exist_ok=True)
            dst_tree = _open_tree(settings, str(dst), args.max_depth, args.dst_filetree_cache)
        exclude_trees = [
            _open_tree(settings, exc, args.max_depth, exclude_cache_path(args.dst_filetree_cache, exc))
            for exc in args.exclude
        ]
    except (SetupError, OSError) as e:
        logger.error("Setup error: %s", e)
        return EXIT_SETUP_ERROR

    ignore = IgnoreMatcher(args.ignore) if args.ignore else None
    try:
        report = sync_trees(
            src_tree,
            dst_tree,
            excludes=exclude_trees,
            dry_run=args.dry_run,
            ignore=ignore,
            max_open_files=settings.max_open_files,
            out=sys.stdout,
        )
    finally:
        src_tree.ledger.close()

    if report.failed:
        logger.warning("%d files could not be copied, see the broken files list", len(report.failed))
    return 0


# -------------------------
# salvagesync-hashtree
# -------------------------

def parse_hashtree_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="salvagesync-hashtree", description="Print the hash tree of DIR.")
    p.add_argument("dir", help="Directory to hash.")
    digests = p.add_mutually_exclusive_group()
    digests.add_argument(
        "--precalculated-digests-file",
        default=None,
        help="Reuse digests from the output of 'find . -type f -exec sha256sum {} +' run inside DIR.",
    )
    digests.add_argument(
        "--precalculated-digests-parsed-dir",
        default=None,
        help="Reuse an already parsed precalculated digests directory.",
    )
    p.add_argument("--sqlite3db", default=None, help="Also store the hash tree into this SQLite DB.")
    p.add_argument("--filetree-cache", default=None, help="Enable the file tree cache at this path.")
    p.add_argument("--broken-files", default=None, help="Enable the list of broken files at this path.")
    p.add_argument("--workers", type=int, default=None, help="Number of hashing workers.")
    p.add_argument("--algorithm", default="sha256", help="hashlib algorithm name (default sha256).")
    _add_common_args(p)
    return p.parse_args(argv)


def _open_digests(args: argparse.Namespace, logger: logging.Logger) -> Optional[DigestStore]:
    if args.precalculated_digests_file:
        store, errors = DigestStore.from_manifest(Path(args.precalculated_digests_file))
        for err in errors:
            logger.warning("precalculated digests file error: %s", err)
        return store
    if args.precalculated_digests_parsed_dir:
        return DigestStore.open_parsed(Path(args.precalculated_digests_parsed_dir))
    return None


def hashtree_main(argv: Optional[list[str]] = None) -> int:
    args = parse_hashtree_args(sys.argv[1:] if argv is None else argv)
    try:
        settings = _settings(args, hash_workers=args.workers)
    except SetupError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return EXIT_SETUP_ERROR
    logger = _logger(settings, args)

    digests = None
    output = None
    try:
        digests = _open_digests(args, logger)
        factory = hasher_factory(args.algorithm, digests)
        if args.sqlite3db:
            output = HashTreeStore(Path(args.sqlite3db))
            output.start_checkpointing(settings.checkpoint_interval_sec)
        tree = _open_tree(settings, args.dir, args.max_depth, args.filetree_cache, args.broken_files)
    except (SetupError, ValueError, OSError) as e:
        logger.error("Setup error: %s", e)
        for store in (digests, output):
            if store is not None:
                store.close()
        return EXIT_SETUP_ERROR

    out = surrogate_safe(sys.stdout)
    errors = 0
    try:
        builder = HashTreeBuilder(tree, hasher_factory=factory, workers=settings.hash_workers)
        for item in builder.items():
            print(item.serialize(), file=out)
            if item.error is not None:
                errors += 1
            elif output is not None:
                output.add(item)
    finally:
        out.flush()
        tree.ledger.close()
        for store in (digests, output):
            if store is not None:
                store.close()

    logger.info("end (%d errors)", errors)
    return 0


# -------------------------
# salvagesync-hashtree-diff
# -------------------------

def parse_hashtree_diff_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="salvagesync-hashtree-diff",
        description="Compare two hash tree files; '<' lines are only in LEFT, '>' lines only in RIGHT.",
    )
    p.add_argument("left", help="Left hash tree file.")
    p.add_argument("right", help="Right hash tree file.")
    p.add_argument(
        "--group-by",
        default=GROUP_BY_DIGEST,
        type=str.lower,
        choices=GROUP_BY_CHOICES,
        help="The key field (default: digest).",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p.parse_args(argv)


def _read_tree_file(path: str, group_by: str, logger: logging.Logger):
    try:
        with open(path, "r", encoding="utf-8", errors="surrogateescape") as f:
            groups, errors = read_hash_tree(f, group_by)
    except OSError as e:
        raise SetupError(f"unable to open '{path}': {e}") from e
    for err in errors:
        logger.warning("%s: %s", path, err)
    return groups


def hashtree_diff_main(argv: Optional[list[str]] = None) -> int:
    args = parse_hashtree_diff_args(sys.argv[1:] if argv is None else argv)
    logger = setup_logger(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        left = _read_tree_file(args.left, args.group_by, logger)
        right = _read_tree_file(args.right, args.group_by, logger)
    except SetupError as e:
        logger.error("Setup error: %s", e)
        return EXIT_SETUP_ERROR

    out = surrogate_safe(sys.stdout)
    for prefix, item in diff_hash_trees(left, right):
        print(f"{prefix}\t{item.serialize()}", file=out)
    return 0


if __name__ == "__main__":
    raise SystemExit(sync_main())
