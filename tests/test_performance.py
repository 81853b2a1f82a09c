import time
from embedded_crypt_db_engine import Database
from rich.console import Console
import sys
import os

_force_tty = os.environ.get("FORCE_TTY", "").lower() in ("1", "true", "yes", "on")
_isatty = getattr(sys.stderr, "isatty", lambda: False)()
_console = Console(file=sys.stderr, force_terminal=(_isatty or _force_tty), color_system="standard")

def progress_printer(evt):
    phase = evt.get("phase", "")
    pct = int(evt.get("pct", 0))
    msg = evt.get("msg", "")
    if pct in (0, 100):
        parts = [p for p in (phase, f"{pct}%", (f"- {msg}" if msg else "")) if p]
        _console.print("[progress] " + " ".join(parts))

def make_perf_schema():
    # 20 typed fields, every other one with a default
    fields = {
        "name": {"type": "string", "required": True},
        "n":    {"type": "number", "required": True, "min": 0},
    }
    for i in range(18):
        if i % 3 == 0:
            fields[f"f{i:02d}"] = {"type": "string", "default": ""}
        elif i % 3 == 1:
            fields[f"f{i:02d}"] = {"type": "number", "default": 0}
        else:
            fields[f"f{i:02d}"] = {"type": "boolean", "default": False}
    return fields

def test_performance_bulk_dataset(tmp_path):
    db_path = tmp_path / "perf.edb"
    N = 2_000

    t0 = time.perf_counter()
    db = Database(str(db_path), "perf-secret", autosave=False, on_progress=progress_printer)
    db.set_schema("item:", make_perf_schema())
    for i in range(N):
        doc = {"name": f"item {i}", "n": i, "f00": f"grp{i % 5}"}
        if i % 2 == 0:
            doc["f01"] = i % 100
        db.set(f"item:{i:05d}", doc)
    for i in range(0, N - 1, 10):
        db.link(f"item:{i:05d}", f"item:{i + 1:05d}")
    db.close()
    t1 = time.perf_counter()
    _console.print(f"[perf] insert {N} records (buffered) + save: {(t1 - t0):.3f}s")

    t2 = time.perf_counter()
    db2 = Database(str(db_path), "perf-secret", on_progress=progress_printer).init()
    t3 = time.perf_counter()
    _console.print(f"[perf] decrypt and load {N} records: {(t3 - t2):.3f}s")
    assert db2.size() == N
    assert db2.get_stats()["edges"] == N // 10

    t4 = time.perf_counter()
    res = db2.query({"n": {"$gte": N // 2}, "f00": {"$in": ["grp0", "grp1"]}}, sort={"n": -1}, limit=50)
    t5 = time.perf_counter()
    _console.print(f"[perf] filtered+sorted query matched={len(res)}: {(t5 - t4):.3f}s")
    assert len(res) == 50
    assert res[0]["n"] == max(i for i in range(N) if i % 5 in (0, 1))
    assert all(r["f00"] in ("grp0", "grp1") for r in res)

    t6 = time.perf_counter()
    hits = db2.search("item 19", limit=5)
    t7 = time.perf_counter()
    _console.print(f"[perf] search hits={len(hits)}: {(t7 - t6):.3f}s")
    assert 0 < len(hits) <= 5

    t8 = time.perf_counter()
    removed = db2.delete_with_links("item:00000")
    t9 = time.perf_counter()
    _console.print(f"[perf] cascade delete removed={len(removed)}: {(t9 - t8):.3f}s")
    assert removed == ["item:00000", "item:00001"]
    assert db2.size() == N - 2
