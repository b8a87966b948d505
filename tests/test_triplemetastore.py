"""Test module for TripleMetaStore specific behaviour"""

import os
from threading import Thread
import pytest
import yaml
from resourcestore import resourcestore_config
from resourcestore.identifier import Identifier
from resourcestore.metastore.triplemetastore import TripleMetaStore
from resourcestore.resourcestore_exceptions import MetaStoreError


@pytest.fixture(name="graph_path")
def init_graph_path(tmp_path):
    """Path to the YAML triple file."""
    return (tmp_path / "graph" / "triples.yaml").as_posix()


def test_triples(graph_path):
    """Each property is stored as a (subject, predicate, object) triple."""
    identifier = Identifier.generate()
    metastore = TripleMetaStore({"path": graph_path})
    metastore.set_all(identifier, {"title": "Graph", "author": "Someone"})
    assert list(metastore.triples()) == [
        (identifier, "author", "Someone"),
        (identifier, "title", "Graph"),
    ]


def test_persists_yaml(graph_path):
    """The graph is written as a YAML list of triples and read back."""
    identifier = Identifier.generate()
    metastore = TripleMetaStore({"path": graph_path})
    metastore.set(identifier, "title", "Persistent")

    with open(graph_path, "r", encoding="utf-8") as graph_file:
        assert yaml.safe_load(graph_file) == [[str(identifier), "title", "Persistent"]]

    reopened = TripleMetaStore({"path": graph_path})
    assert reopened.get_all(identifier) == {"title": "Persistent"}
    assert reopened.find_exact({"title": "persistent"})[0].identifier == identifier


def test_transaction_writes_once(graph_path):
    """Writes in a transaction reach the file when the outermost block commits."""
    identifier = Identifier.generate()
    metastore = TripleMetaStore({"path": graph_path})
    with metastore.transaction():
        metastore.set(identifier, "title", "Batched")
        metastore.set(identifier, "author", "Someone")
        assert TripleMetaStore({"path": graph_path}).count() == 0
    assert TripleMetaStore({"path": graph_path}).get_all(identifier) == {
        "title": "Batched",
        "author": "Someone",
    }


def test_rollback_not_persisted(graph_path):
    """A rolled back transaction does not touch the file."""
    identifier = Identifier.generate()
    metastore = TripleMetaStore({"path": graph_path})
    metastore.set(identifier, "title", "Kept")
    with pytest.raises(RuntimeError):
        with metastore.transaction():
            metastore.set(identifier, "title", "Discarded")
            raise RuntimeError("abort")
    assert metastore.get(identifier, "title") == "Kept"
    assert TripleMetaStore({"path": graph_path}).get(identifier, "title") == "Kept"


def test_index_updated_on_replace():
    """Replacing a value removes the old value from the search index."""
    identifier = Identifier.generate()
    metastore = TripleMetaStore()
    metastore.set(identifier, "title", "Old")
    metastore.set(identifier, "title", "New")
    assert not metastore.find_exact({"title": "old"})
    assert metastore.all_values("title") == {"New"}
    metastore.delete_resource(identifier)
    assert metastore.all_keys() == set()


def test_invalid_graph_file(graph_path, tmp_path):
    """A file that is not a list of triples raises MetaStoreError."""
    (tmp_path / "graph").mkdir()
    with open(graph_path, "w", encoding="utf-8") as graph_file:
        graph_file.write("title: not a list\n")
    with pytest.raises(MetaStoreError):
        TripleMetaStore({"path": graph_path})


def test_writes_append_to_journal(graph_path):
    """Commits after the first append to the journal and leave the graph file as is."""
    first = Identifier.generate()
    second = Identifier.generate()
    metastore = TripleMetaStore({"path": graph_path})
    metastore.set(first, "title", "Written")
    with open(graph_path, "r", encoding="utf-8") as graph_file:
        written = graph_file.read()

    metastore.set(second, "title", "Journaled")
    metastore.delete_property(first, "title")
    with open(graph_path, "r", encoding="utf-8") as graph_file:
        assert graph_file.read() == written
    with open(graph_path + ".journal", "r", encoding="utf-8") as journal_file:
        assert list(yaml.safe_load_all(journal_file)) == [
            [[str(second), "title", "Journaled"]],
            [[str(first), "title", None]],
        ]

    reopened = TripleMetaStore({"path": graph_path})
    assert reopened.dump() == {str(second): {"title": "Journaled"}}

    metastore.compact()
    assert not os.path.exists(graph_path + ".journal")
    with open(graph_path, "r", encoding="utf-8") as graph_file:
        assert yaml.safe_load(graph_file) == [[str(second), "title", "Journaled"]]
    assert TripleMetaStore({"path": graph_path}).dump() == reopened.dump()


def test_journal_compacted(graph_path, monkeypatch):
    """The graph file is rewritten once the journal outgrows its limit."""
    monkeypatch.setattr(resourcestore_config, "JOURNAL_COMPACT_MIN", 3)
    identifier = Identifier.generate()
    metastore = TripleMetaStore({"path": graph_path})
    # The first commit writes the graph file, the next four fill the journal
    for number in range(6):
        metastore.set(identifier, "title", f"Value {number}")
    with open(graph_path, "r", encoding="utf-8") as graph_file:
        assert yaml.safe_load(graph_file) == [[str(identifier), "title", "Value 4"]]
    assert TripleMetaStore({"path": graph_path}).get(identifier, "title") == "Value 5"


def test_load_rewrites_graph(graph_path):
    """load replaces the graph file and drops the journal."""
    identifier = Identifier.generate()
    metastore = TripleMetaStore({"path": graph_path})
    metastore.set(Identifier.generate(), "title", "Replaced")
    metastore.set(Identifier.generate(), "title", "Journaled")
    metastore.load({str(identifier): {"title": "Loaded"}})
    with open(graph_path, "r", encoding="utf-8") as graph_file:
        assert yaml.safe_load(graph_file) == [[str(identifier), "title", "Loaded"]]
    assert TripleMetaStore({"path": graph_path}).dump() == {
        str(identifier): {"title": "Loaded"}
    }


def test_rollback_restores_indexes():
    """A failed transaction restores both the values and the search index."""
    kept = Identifier.generate()
    removed = Identifier.generate()
    metastore = TripleMetaStore()
    metastore.set_all(kept, {"title": "Original", "author": "Someone"})
    metastore.set(removed, "title", "Removed later")
    before = list(metastore.triples())
    with pytest.raises(RuntimeError):
        with metastore.transaction():
            metastore.set_all(kept, {"title": "Changed"})
            metastore.delete_resource(removed)
            metastore.load({})
            metastore.set(Identifier.generate(), "title", "Added")
            raise RuntimeError("abort")
    assert list(metastore.triples()) == before
    found = metastore.find_exact({"title": "original"})
    assert [resource.identifier for resource in found] == [kept]
    assert not metastore.find_exact({"title": "changed"})
    assert metastore.all_values("title") == {"Original", "Removed later"}


def test_triples_does_not_hold_lock(graph_path):
    """A partly consumed triples() iterator does not block writers."""
    metastore = TripleMetaStore({"path": graph_path})
    metastore.set_all(Identifier.generate(), {"title": "One", "author": "Someone"})
    triples = metastore.triples()
    next(triples)

    writer = Thread(
        target=metastore.set, args=(Identifier.generate(), "title", "Two"), daemon=True
    )
    writer.start()
    writer.join(timeout=5)
    assert not writer.is_alive()
    assert metastore.count() == 2
