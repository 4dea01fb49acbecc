import hashlib
import os
import sqlite3
import sys
from pathlib import Path

from conftest import BAD_NAME, byte_stream, write, write_bad_name
from salvagesync.cli import (
    EXIT_SETUP_ERROR,
    exclude_cache_path,
    hashtree_diff_main,
    hashtree_main,
    sync_main,
)
from salvagesync.hashitem import HashTreeItem, parse_hash_tree_item


def test_sync_dry_run_prints_report(tmp_path: Path, no_config: Path, capsys):
    src, dst = tmp_path / "src", tmp_path / "dst"
    write(src / "a", b"1234")
    write(src / "sub" / "b", b"12")

    code = sync_main([str(src), str(dst), "--dry-run", "--config", str(no_config)])

    assert code == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ["Syncing: to copy report", "a", "sub/b", "Syncing: to copy report -- complete"]
    assert not dst.exists()


def test_sync_copies_and_records_broken_files(tmp_path: Path, no_config: Path, capsys):
    src, dst = tmp_path / "src", tmp_path / "dst"
    write(src / "a", b"1234")
    broken = tmp_path / "broken.txt"
    cache = tmp_path / "src-cache.db"

    args = [str(src), str(dst), "--config", str(no_config), "--src-broken-files", str(broken), "--src-filetree-cache", str(cache)]
    assert sync_main(args) == 0
    assert (dst / "a").read_bytes() == b"1234"
    assert broken.exists()
    assert cache.exists()
    capsys.readouterr()

    # second run loads the cached source tree and has nothing left to copy
    assert sync_main(args) == 0
    assert capsys.readouterr().out.splitlines()[1:-1] == []


def test_sync_setup_errors(tmp_path: Path, no_config: Path):
    src = tmp_path / "src"
    src.mkdir()
    assert sync_main([str(tmp_path / "missing"), str(tmp_path / "dst"), "--config", str(no_config)]) == EXIT_SETUP_ERROR
    assert sync_main([str(src), str(src / "inner"), "--config", str(no_config)]) == EXIT_SETUP_ERROR
    assert sync_main([str(src), str(tmp_path / "dst"), "--config", str(no_config), "--max-open-files", "1"]) == EXIT_SETUP_ERROR


def test_exclude_cache_path():
    assert exclude_cache_path(None, "/mnt/old") is None
    assert exclude_cache_path("/tmp/dst.db", "/mnt/old") == "/tmp/dst.db--mnt-old"


def test_hashtree_prints_items_and_fills_db(tmp_path: Path, no_config: Path, capsys):
    root = tmp_path / "root"
    write(root / "x.txt", b"x")
    write(root / "d" / "y.txt", b"yy")
    db = tmp_path / "tree.db"

    code = hashtree_main([str(root), "--config", str(no_config), "--workers", "4", "--sqlite3db", str(db)])

    assert code == 0
    items = {i.path: i for i in map(parse_hash_tree_item, capsys.readouterr().out.splitlines())}
    assert sorted(items) == ["d/y.txt", "x.txt"]
    assert items["d/y.txt"].digest == hashlib.sha256(b"yy").digest()
    with sqlite3.connect(str(db)) as conn:
        assert conn.execute("SELECT COUNT(*) FROM hash_tree").fetchone()[0] == 2


def test_hashtree_with_precalculated_digests(tmp_path: Path, no_config: Path, capsys):
    root = tmp_path / "root"
    write(root / "x.txt", b"x")
    manifest = tmp_path / "sums.txt"
    manifest.write_text("00ff  ./x.txt\n")

    code = hashtree_main([str(root), "--config", str(no_config), "--precalculated-digests-file", str(manifest)])

    assert code == 0
    (line,) = capsys.readouterr().out.splitlines()
    assert parse_hash_tree_item(line).digest == b"\x00\xff"


def test_hashtree_setup_errors(tmp_path: Path, no_config: Path):
    assert hashtree_main([str(tmp_path / "missing"), "--config", str(no_config)]) == EXIT_SETUP_ERROR
    assert hashtree_main([str(tmp_path), "--config", str(no_config), "--algorithm", "nope"]) == EXIT_SETUP_ERROR


def test_hashtree_diff(tmp_path: Path, capsys):
    shared = HashTreeItem("same", b"\x01", 1, 1, 1, 1)
    old = HashTreeItem("f", b"\x02", 1, 1, 1, 1)
    new = HashTreeItem("f", b"\x03", 1, 1, 1, 1)
    left = tmp_path / "left.txt"
    right = tmp_path / "right.txt"
    left.write_text(f"{shared}\n{old}\n")
    right.write_text(f"{shared}\n{new}\nerror\tunable to stat()\tgone\n")

    assert hashtree_diff_main([str(left), str(right), "--group-by", "PATH"]) == 0
    assert capsys.readouterr().out.splitlines() == [f"<\t{old}", f">\t{new}"]


def test_hashtree_diff_missing_file(tmp_path: Path):
    assert hashtree_diff_main([str(tmp_path / "a"), str(tmp_path / "b")]) == EXIT_SETUP_ERROR


def test_hashtree_undecodable_name(tmp_path: Path, no_config: Path, monkeypatch):
    root = tmp_path / "root"
    write_bad_name(root, b"bytes")
    write(root / "zz_good.txt", b"ok")
    db = tmp_path / "tree.db"
    out = byte_stream()
    monkeypatch.setattr(sys, "stdout", out)

    assert hashtree_main([str(root), "--config", str(no_config), "--sqlite3db", str(db)]) == 0

    lines = out.buffer.getvalue().splitlines()
    items = [parse_hash_tree_item(os.fsdecode(line)) for line in lines]
    assert sorted(i.path for i in items) == sorted([os.fsdecode(BAD_NAME), "zz_good.txt"])
    assert all(i.error is None for i in items)
    assert any(line.endswith(b"\t" + BAD_NAME) for line in lines)
    with sqlite3.connect(str(db)) as conn:
        assert sorted(r[0] for r in conn.execute("SELECT path FROM hash_tree")) == [BAD_NAME, b"zz_good.txt"]


def test_hashtree_diff_undecodable_name(tmp_path: Path, monkeypatch):
    name = os.fsdecode(BAD_NAME)
    left = tmp_path / "left.txt"
    right = tmp_path / "right.txt"
    left.write_bytes(b"")
    right.write_bytes(HashTreeItem(name, b"\x01", 1, 1, 1, 1).serialize().encode("utf-8", "surrogateescape") + b"\n")
    out = byte_stream()
    monkeypatch.setattr(sys, "stdout", out)

    assert hashtree_diff_main([str(left), str(right), "--group-by", "PATH"]) == 0

    (line,) = out.buffer.getvalue().splitlines()
    assert line.startswith(b">\t")
    assert line.endswith(b"\t" + BAD_NAME)
