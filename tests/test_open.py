import json
import threading
from datetime import date, datetime, timezone

import pytest
from rich.console import Console
from embedded_crypt_db_engine import (
    CorruptStateError,
    Database,
    EncryptionService,
    KeyRotationError,
    PersistenceCoordinator,
    SaveError,
    ValidationError,
)

_console = Console(force_terminal=True, color_system="standard")

SECRET = "s3cret-passphrase"

def progress_printer(evt):
    phase = evt.get("phase", "")
    pct = int(evt.get("pct", 0))
    msg = evt.get("msg", "")
    parts = [phase, f"{pct}%"]
    if msg:
        parts.append(f"- {msg}")
    _console.print(f"[progress] {' '.join(parts)}", highlight=False, soft_wrap=True)

def is_even(value, path):
    return value % 2 == 0

def make_schema():
    return {
        "name": {"type": "string", "required": True},
        "age":  {"type": "number", "default": 0, "validator": "even"},
    }

def populate(db):
    db.add_validator("even", is_even)
    db.set_schema("user:", make_schema())
    db.set("user:1", {"name": "Alice", "age": 30})
    db.set("user:2", {"name": "Bob"})
    db.set("settings", {"theme": "dark", "nested": {"list": [1, 2.5, None, True]}})
    db.link("user:1", "user:2")

def test_missing_file_is_empty_store(tmp_path):
    db_path = tmp_path / "sub" / "users.edb"
    db = Database(str(db_path), SECRET).init()
    assert db.size() == 0
    assert db.get("anything") is None
    assert db.exists("anything") is False
    assert not db_path.exists()

def test_save_load_roundtrip(tmp_path):
    db_path = tmp_path / "sub" / "users.edb"
    db = Database(str(db_path), SECRET, on_progress=progress_printer)
    populate(db)
    assert db.get("user:2") == {"name": "Bob", "age": 0}

    again = Database(str(db_path), SECRET, validators={"even": is_even}, on_progress=progress_printer)
    assert again.fetch_all() == db.fetch_all()
    assert again.get_all_keys() == ["user:1", "user:2", "settings"]
    assert again.get_schema("user:3") == make_schema()
    assert again.get_all_links() == {"user:1": ["user:2"]}
    assert again.get_all_linked_to() == {"user:2": ["user:1"]}
    with pytest.raises(ValidationError):
        again.set("user:3", {"name": "Carol", "age": 3})

def test_persisted_state_layout(tmp_path):
    db_path = tmp_path / "users.edb"
    db = Database(str(db_path), SECRET)
    populate(db)

    raw = db_path.read_bytes()
    assert raw.startswith(b"ECDB1$")
    assert b"Alice" not in raw

    state = PersistenceCoordinator(str(db_path), EncryptionService(SECRET)).load()
    assert set(state) == {"data", "schemas", "validators", "links", "linkedTo"}
    assert state["data"] == db.fetch_all()
    assert state["schemas"] == {"user:": make_schema()}
    assert list(state["validators"]) == ["even"]
    assert state["validators"]["even"].endswith(":is_even")
    assert state["links"] == {"user:1": ["user:2"]}
    assert state["linkedTo"] == {"user:2": ["user:1"]}

def test_unbound_validator_after_reload(tmp_path):
    db_path = tmp_path / "users.edb"
    populate(Database(str(db_path), SECRET))

    db = Database(str(db_path), SECRET)
    with pytest.raises(ValidationError):
        db.set("user:9", {"name": "Zed", "age": 2})
    db.add_validator("even", is_even)
    db.set("user:9", {"name": "Zed", "age": 2})
    assert db.get("user:9") == {"name": "Zed", "age": 2}

def test_wrong_key_is_corrupt_state(tmp_path):
    db_path = tmp_path / "users.edb"
    populate(Database(str(db_path), SECRET))
    before = db_path.read_bytes()

    with pytest.raises(CorruptStateError):
        Database(str(db_path), "wrong-key").init()

    db = Database(str(db_path), "wrong-key").init(reset_on_corruption=True)
    assert db.size() == 0
    assert db.get_all_links() == {}
    assert db_path.read_bytes() == before

def test_garbage_and_empty_files(tmp_path):
    bad = tmp_path / "bad.edb"
    bad.write_bytes(b"definitely not encrypted")
    with pytest.raises(CorruptStateError):
        Database(str(bad), SECRET).init()

    svc = EncryptionService(SECRET)
    not_json = tmp_path / "notjson.edb"
    not_json.write_bytes(svc.encrypt("{broken"))
    with pytest.raises(CorruptStateError):
        Database(str(not_json), SECRET).init()

    wrong_shape = tmp_path / "shape.edb"
    wrong_shape.write_bytes(svc.encrypt(json.dumps({"data": [1, 2]})))
    with pytest.raises(CorruptStateError):
        Database(str(wrong_shape), SECRET).init()

    empty = tmp_path / "empty.edb"
    empty.write_bytes(b"")
    assert Database(str(empty), SECRET).init().size() == 0

def test_every_mutation_is_persisted(tmp_path):
    db_path = str(tmp_path / "users.edb")
    db = Database(db_path, SECRET)

    def reopened():
        return Database(db_path, SECRET)

    db.set("a", [1])
    assert reopened().get("a") == [1]
    db.push("a", 2)
    assert reopened().get("a") == [1, 2]
    db.pull("a", 1)
    assert reopened().get("a") == [2]
    db.set("b", 1)
    db.link("a", "b")
    assert reopened().is_linked("a", "b")
    db.unlink("a", "b")
    assert not reopened().is_linked("a", "b")
    db.delete("b")
    assert not reopened().exists("b")
    db.clear()
    assert reopened().size() == 0

def test_save_failure_is_surfaced(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file where a directory should be")
    db = Database(str(blocker / "users.edb"), SECRET)
    with pytest.raises(SaveError) as ei:
        db.set("a", 1)
    assert ei.value.saved is False
    # memory already holds the value; disk does not
    assert db.get("a") == 1

def test_key_rotation(tmp_path):
    db_path = str(tmp_path / "users.edb")
    db = Database(db_path, SECRET)
    db.set("a", {"v": 1})
    assert db.change_secret_key("new-secret") is True

    assert Database(db_path, "new-secret").get("a") == {"v": 1}
    with pytest.raises(CorruptStateError):
        Database(db_path, SECRET).init()

def test_failed_key_rotation_is_reported(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    db = Database(str(blocker / "users.edb"), SECRET, autosave=False)
    db.set("a", 1)
    with pytest.raises(KeyRotationError) as ei:
        db.change_secret_key("new-secret")
    assert isinstance(ei.value, SaveError)

def test_progress_events(tmp_path):
    events = []

    def collect(evt):
        events.append(evt.get("phase"))

    db_path = str(tmp_path / "events.edb")
    db = Database(db_path, SECRET, on_progress=collect)
    db.set("a", 1)
    assert events == ["save.start", "save.encrypt", "save.done"]

    events.clear()
    Database(db_path, SECRET, on_progress=collect).init()
    assert events == ["load.start", "load.done"]

    events.clear()
    db.set("b", 2)
    db.link("a", "b")
    events.clear()
    db.delete("a")
    assert "delete.cascade" in events

def test_concurrent_writers_do_not_lose_updates(tmp_path):
    db_path = str(tmp_path / "threads.edb")
    db = Database(db_path, SECRET)
    db.set("log", [])

    def writer(n):
        for i in range(5):
            db.push("log", f"{n}-{i}")
            db.set(f"w{n}-{i}", i)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    again = Database(db_path, SECRET)
    assert len(again.get("log")) == 20
    assert again.size() == 21

def test_dates_read_the_same_before_and_after_reload(tmp_path):
    db_path = str(tmp_path / "dates.edb")
    db = Database(db_path, SECRET)
    when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    db.set("event", {"when": when, "day": date(2024, 1, 2)})
    assert db.get("event") == {"when": "2024-01-02T03:04:05+00:00", "day": "2024-01-02"}

    q = {"when": {"$type": "string", "$gte": "2024-01-01"}}
    before = db.query(q)
    assert [r["_key"] for r in before] == ["event"]

    again = Database(db_path, SECRET)
    assert again.fetch_all() == db.fetch_all()
    assert again.query(q) == before
    assert again.query({"when": {"$type": "date"}}) == db.query({"when": {"$type": "date"}}) == []
