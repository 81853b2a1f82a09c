import pytest
from embedded_crypt_db_engine import Database, LinkError, LinkGraph

SECRET = "link-test-secret"

def make_db(tmp_path, **kw):
    return Database(str(tmp_path / "links.edb"), SECRET, **kw)

def make_docs(*keys):
    return {k: {"name": k} for k in keys}

def test_link_requires_both_keys():
    g = LinkGraph()
    docs = make_docs("a")
    with pytest.raises(LinkError):
        g.link("a", "b", docs)
    with pytest.raises(LinkError):
        g.link("b", "a", docs)
    assert g.get_all_links() == {}

def test_link_is_idempotent():
    g = LinkGraph()
    docs = make_docs("a", "b")
    g.link("a", "b", docs)
    g.link("a", "b", docs)
    assert g.get_all_links() == {"a": ["b"]}
    assert g.get_all_linked_to() == {"b": ["a"]}
    assert g.is_linked("a", "b")
    assert not g.is_linked("b", "a")

def test_unlink_prunes_empty_entries():
    g = LinkGraph()
    docs = make_docs("a", "b", "c")
    g.link("a", "b", docs)
    g.link("a", "c", docs)
    assert g.unlink("a", "b") is True
    assert g.get_all_links() == {"a": ["c"]}
    assert g.get_all_linked_to() == {"c": ["a"]}
    assert g.unlink("a", "c") is True
    assert g.get_all_links() == {}
    assert g.get_all_linked_to() == {}
    assert g.unlink("a", "c") is False

def test_neighbor_lists_are_copies():
    g = LinkGraph()
    g.link("a", "b", make_docs("a", "b"))
    g.get_links("a").append("zzz")
    g.get_linked_to("b").append("zzz")
    assert g.get_links("a") == ["b"]
    assert g.get_linked_to("b") == ["a"]
    assert g.get_links("nobody") == []

def test_linked_keys_and_has_any_links():
    g = LinkGraph()
    docs = make_docs("a", "b", "c")
    g.link("a", "b", docs)
    g.link("c", "a", docs)
    assert g.get_linked_keys("a") == ["b", "c"]
    assert g.has_any_links("b")
    assert not g.has_any_links("zzz")

def test_remove_key_from_links_detaches_both_directions():
    g = LinkGraph()
    docs = make_docs("a", "b", "c")
    g.link("a", "b", docs)
    g.link("c", "a", docs)
    g.link("c", "b", docs)
    assert g.remove_key_from_links("a") == ["b"]
    assert g.get_all_links() == {"c": ["b"]}
    assert g.get_all_linked_to() == {"b": ["c"]}

def test_validate_and_repair_missing_target():
    g = LinkGraph()
    docs = make_docs("a", "b", "c")
    g.link("a", "b", docs)
    g.link("a", "c", docs)
    g.link("b", "c", docs)
    del docs["c"]
    violations = g.validate_link_integrity(docs)
    assert violations == [
        {"type": "missing_target", "source": "a", "target": "c"},
        {"type": "missing_target", "source": "b", "target": "c"},
    ]
    assert g.repair_link_integrity(docs) == {"removed": 2, "fixed": 1}
    assert g.get_all_links() == {"a": ["b"]}
    assert g.get_all_linked_to() == {"b": ["a"]}
    assert g.validate_link_integrity(docs) == []

def test_validate_and_repair_missing_source():
    g = LinkGraph()
    docs = make_docs("a", "b", "c")
    g.link("a", "b", docs)
    g.link("a", "c", docs)
    del docs["a"]
    assert g.validate_link_integrity(docs) == [{"type": "missing_source", "key": "a"}]
    assert g.repair_link_integrity(docs) == {"removed": 2, "fixed": 0}
    assert g.get_all_links() == {}
    assert g.get_all_linked_to() == {}

def test_export_import_roundtrip():
    g = LinkGraph()
    g.link("a", "b", make_docs("a", "b"))
    h = LinkGraph()
    h.import_data(g.export_data())
    assert h.export_data() == {"links": {"a": ["b"]}, "linkedTo": {"b": ["a"]}}

def test_cascade_delete_terminates_on_cycle(tmp_path):
    db = make_db(tmp_path)
    db.set("a", 1)
    db.set("b", 2)
    db.link("a", "b")
    db.link("b", "a")
    assert db.delete_with_links("a") == ["a", "b"]
    assert not db.exists("a")
    assert not db.exists("b")
    assert db.get_all_links() == {}
    assert db.get_all_linked_to() == {}

def test_cascade_delete_follows_forward_links_only(tmp_path):
    db = make_db(tmp_path)
    for k in ("a", "b", "c", "x", "d"):
        db.set(k, {"k": k})
    db.link("a", "b")
    db.link("b", "c")
    db.link("x", "a")
    assert db.delete("a") is True
    assert db.get_all_keys() == ["x", "d"]
    assert db.get_links("x") == []
    assert db.delete("a") is False

def test_db_link_errors(tmp_path):
    db = make_db(tmp_path)
    db.set("a", 1)
    with pytest.raises(LinkError):
        db.link("a", "ghost")
    with pytest.raises(LinkError):
        db.unlink("a", "ghost")
    db.set("b", 2)
    assert db.unlink("a", "b") is False
    db.link("a", "b")
    assert db.is_linked("a", "b")
    assert db.unlink("a", "b") is True

def test_links_survive_reopen(tmp_path):
    db = make_db(tmp_path)
    db.set("a", 1)
    db.set("b", 2)
    db.link("a", "b")
    db.link("a", "b")

    again = make_db(tmp_path)
    assert again.get_all_links() == {"a": ["b"]}
    assert again.get_linked_to("b") == ["a"]
    assert again.get_stats()["edges"] == 1
