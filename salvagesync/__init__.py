# /salvagesync/__init__.py
"""
salvagesync
- Copies a directory tree off slow or failing storage onto a destination tree.
- Copies only files whose size differs from the destination (size-only, no content check).
- Records paths it could not list/stat/copy into a broken-files ledger and skips them next run.
- Survives hung or looping directory listings (watchdog, duplicate-name guard, cycle detection).
- Optionally persists each scanned tree into an SQLite snapshot to resume quickly.
- Builds hash trees (digest, size, mtime/ctime/atime per file) and diffs them.

Usage
  pip install salvagesync
  salvagesync-sync /mnt/dying-disk /backup --src-broken-files broken.txt --dry-run
  salvagesync-hashtree /backup --sqlite3db /tmp/backup.hashtree > backup.hashtree
  salvagesync-hashtree-diff old.hashtree backup.hashtree --group-by path
"""

__version__ = "0.1.0"
