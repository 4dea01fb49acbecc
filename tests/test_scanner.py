from pathlib import Path

import pytest

from conftest import HANG, FakeFS, FakeLister, RecordingLedger, scan, write, write_bad_name
from salvagesync.errors import SetupError
from salvagesync.filetree import FileTree
from salvagesync.scanner import DirScanner, open_file_tree
from salvagesync.store import SnapshotStore


def fake_scan(entries, root="/fake", timeout=30.0, **kwargs):
    fs = FakeFS(entries)
    tree = FileTree(root, ledger=RecordingLedger())
    DirScanner(
        tree,
        max_open_files=kwargs.pop("max_open_files", 4),
        lister=FakeLister(fs, timeout=timeout),
        stat_func=fs.stat,
        **kwargs,
    ).start()
    assert tree.wait_complete(timeout=30)
    return tree


def make_tree(root: Path) -> Path:
    write(root / "top.txt", b"12345")
    write(root / "a" / "one.bin", b"1")
    write(root / "a" / "b" / "two.bin", b"22")
    write(root / "a" / "b" / "c" / "three.bin", b"333")
    (root / "empty").mkdir()
    return root


def test_scans_every_regular_file(tmp_path: Path):
    root = make_tree(tmp_path / "root")
    tree = scan(root)

    assert sorted(tree.paths()) == ["a/b/c/three.bin", "a/b/two.bin", "a/one.bin", "top.txt"]
    assert tree.lookup("a/b/two.bin").size == 2
    assert len(tree.ledger) == 0


def test_depth_limit(tmp_path: Path):
    root = make_tree(tmp_path / "root")
    assert sorted(scan(root, max_depth=1).paths()) == ["top.txt"]
    assert sorted(scan(root, max_depth=2).paths()) == ["a/one.bin", "top.txt"]


def test_symlinks_are_not_followed(tmp_path: Path):
    root = make_tree(tmp_path / "root")
    (root / "loop").symlink_to(root)
    (root / "link.txt").symlink_to(root / "top.txt")

    tree = scan(root)
    assert "link.txt" not in tree
    assert not any(p.startswith("loop/") for p in tree.paths())


def test_directory_looping_back_is_recorded():
    tree = fake_scan(
        {
            "/fake": ("dir", 1, ["a", "top.txt"]),
            "/fake/top.txt": ("file", 10, 3),
            "/fake/a": ("dir", 2, ["f.txt", "a"]),
            "/fake/a/f.txt": ("file", 11, 4),
            "/fake/a/a": ("dir", 2, ["f.txt", "a"]),
        }
    )

    assert sorted(tree.paths()) == ["a/f.txt", "top.txt"]
    assert tree.ledger.paths() == {"a/a"}


def test_name_collision_aborts_the_directory():
    tree = fake_scan(
        {
            "/fake": ("dir", 1, ["x", "sub/../x", "never.txt"]),
            "/fake/x": ("file", 10, 1),
            "/fake/never.txt": ("file", 11, 1),
        },
        max_open_files=1,
    )

    assert tree.paths() == ["x"]
    assert tree.ledger.paths() == {"."}
    assert "got into a cycle" in tree.ledger.causes["."][0]


def test_stat_failure_is_recorded_and_scan_goes_on():
    tree = fake_scan(
        {
            "/fake": ("dir", 1, ["gone.txt", "ok.txt"]),
            "/fake/ok.txt": ("file", 10, 7),
        }
    )

    assert tree.paths() == ["ok.txt"]
    assert tree.ledger.paths() == {"gone.txt"}
    assert isinstance(tree.ledger.causes["gone.txt"][0], FileNotFoundError)


def test_duplicate_names_are_filtered_before_the_scanner():
    tree = fake_scan(
        {
            "/fake": ("dir", 1, ["d"]),
            "/fake/d": ("dir", 2, ["bad", "bad2", "bad", "later.txt"]),
            "/fake/d/later.txt": ("file", 10, 1),
        }
    )

    # the duplicate "bad" never reaches the scanner, so the listing is not looping
    assert tree.paths() == ["d/later.txt"]
    assert tree.ledger.paths() == {"d/bad", "d/bad2"}


def test_same_failing_entry_twice_means_a_looping_listing():
    tree = fake_scan(
        {
            "/fake": ("dir", 1, ["d"]),
            "/fake/d": ("dir", 2, ["bad", "x/../bad", "later.txt"]),
            "/fake/d/later.txt": ("file", 10, 1),
        },
        max_open_files=1,
    )

    assert len(tree) == 0
    assert tree.ledger.paths() == {"d/bad", "d"}
    assert "got into a loop" in tree.ledger.causes["d"][0]


def test_stalled_listing_is_abandoned_by_the_watchdog():
    tree = fake_scan(
        {
            "/fake": ("dir", 1, ["a", "b.txt"]),
            "/fake/a": ("dir", 2, HANG),
            "/fake/b.txt": ("file", 10, 1),
        },
        timeout=0.2,
    )

    assert tree.paths() == ["b.txt"]
    assert tree.ledger.paths() == {"a"}
    assert "watchdog timeout" in tree.ledger.causes["a"][0]


def test_unreadable_root_is_recorded():
    tree = fake_scan({"/fake": ("dir", 1, ["x"]), "/fake/x": ("file", 2, 1)}, root="/elsewhere")
    assert len(tree) == 0
    assert tree.ledger.paths() == {"."}


def test_paths_from_previous_run_are_skipped(tmp_path: Path):
    root = make_tree(tmp_path / "root")
    ledger_path = tmp_path / "broken.txt"
    ledger_path.write_text("a/one.bin\na/b\n")

    tree = scan(root, ledger_path=ledger_path)
    assert sorted(tree.paths()) == ["top.txt"]
    tree.ledger.close()
    assert ledger_path.read_text() == "a/one.bin\na/b\n"


def test_snapshot_is_written_then_reused(tmp_path: Path):
    root = make_tree(tmp_path / "root")
    cache = tmp_path / "cache.db"

    first = scan(root, snapshot_path=cache)
    assert len(first) == 4

    # the reload must not look at the disk again
    (root / "top.txt").unlink()
    write(root / "new.txt", b"x")
    second = scan(root, snapshot_path=cache)
    assert sorted(second.paths()) == sorted(first.paths())
    assert second.lookup("top.txt").size == 5


def test_undecodable_name_is_kept_in_snapshot(tmp_path: Path):
    root = tmp_path / "root"
    bad = write_bad_name(root, b"12")
    write(root / "zz_good.txt", b"123")
    cache = tmp_path / "cache.db"

    first = scan(root, snapshot_path=cache)
    assert sorted(first.paths()) == sorted([bad, "zz_good.txt"])
    assert len(first.ledger) == 0

    second = scan(root, snapshot_path=cache)
    assert second.lookup(bad).size == 2
    assert second.lookup("zz_good.txt").size == 3


def test_snapshot_of_another_root_is_refused(tmp_path: Path):
    cache = tmp_path / "cache.db"
    SnapshotStore(cache, "/somewhere/else").close()
    with pytest.raises(SetupError):
        open_file_tree(str(tmp_path), snapshot_path=cache)


def test_missing_root_is_setup_error(tmp_path: Path):
    with pytest.raises(SetupError):
        open_file_tree(str(tmp_path / "missing"))
