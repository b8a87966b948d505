"""Core module for TripleMetaStore"""

import logging
import os
import threading
from contextlib import contextmanager
from tempfile import NamedTemporaryFile
import yaml
from resourcestore import resourcestore_config
from resourcestore.identifier import Identifier
from resourcestore.metastore import (
    MetaStore,
    fold,
    glob_to_regex,
    normalize_criteria,
    sort_and_paginate,
    validate_key,
    validate_properties,
    validate_property,
)
from resourcestore.resourcestore_exceptions import MetaStoreError


class TripleMetaStore(MetaStore):
    """A graph MetaStore that keeps every property as a (subject, predicate, object)
    triple: the resource identifier, the property name and the value.

    Two indexes are maintained: subject -> predicate -> object for resource reads,
    and predicate -> folded object -> subjects for searches, so exact lookups touch
    only the resources that carry the searched values.

    Every change made inside a transaction is recorded in an undo log as the
    triple's previous object (or None when it was absent); a failed transaction
    replays that log backwards.

    When a `path` is configured the graph is persisted there as a YAML list of
    triples. Each committed transaction appends the objects it changed to a
    journal beside it (`<path>.journal`, one YAML document per commit, None for a
    removed triple). The graph file is rewritten atomically, and the journal
    dropped, on the first commit, after `load`, and once the journal grows past
    `JOURNAL_COMPACT_MIN` entries and the number of subjects. Both files are read
    back on construction.

    :param dict connection: Optional `{"path": "<file>.yaml"}`.
    :param logging.Logger logger: Logger to use, defaults to this module's logger.
    """

    journal_suffix = ".journal"

    def __init__(self, connection=None, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.path = (connection or {}).get("path")
        self.journal_path = self.path + self.journal_suffix if self.path else None
        self.graph_lock = threading.RLock()
        self._undo = None
        self._rewrite = False
        self._journal_entries = 0
        self.spo = {}
        self.pos = {}
        if self.path:
            self._read_graph()
        self.logger.debug(
            "TripleMetaStore - Initialized with %d subjects (path: %s)",
            len(self.spo),
            self.path,
        )

    # Graph primitives

    def _link(self, subject, predicate, obj):
        self._unlink(subject, predicate)
        self.spo.setdefault(subject, {})[predicate] = obj
        self.pos.setdefault(predicate, {}).setdefault(fold(obj), set()).add(subject)

    def _unlink(self, subject, predicate):
        predicates = self.spo.get(subject)
        if predicates is None or predicate not in predicates:
            return None
        obj = predicates.pop(predicate)
        if not predicates:
            del self.spo[subject]
        objects = self.pos[predicate]
        subjects = objects[fold(obj)]
        subjects.discard(subject)
        if not subjects:
            del objects[fold(obj)]
        if not objects:
            del self.pos[predicate]
        return obj

    def _add_triple(self, subject, predicate, obj):
        previous = self.spo.get(subject, {}).get(predicate)
        self._undo.append((subject, predicate, previous))
        self._link(subject, predicate, obj)

    def _remove_triple(self, subject, predicate):
        previous = self._unlink(subject, predicate)
        if previous is not None:
            self._undo.append((subject, predicate, previous))

    def _remove_subject(self, subject):
        for predicate in list(self.spo.get(subject, {})):
            self._remove_triple(subject, predicate)

    def _rollback(self):
        for subject, predicate, previous in reversed(self._undo):
            if subject is None:
                self.spo, self.pos = previous
            elif previous is None:
                self._unlink(subject, predicate)
            else:
                self._link(subject, predicate, previous)

    def triples(self):
        """Yield every `(subject, predicate, object)` triple in subject order."""
        with self.graph_lock:
            triples = [
                (subject, predicate, obj)
                for subject in sorted(self.spo)
                for predicate, obj in sorted(self.spo[subject].items())
            ]
        yield from triples

    # Persistence

    def _read_graph(self):
        if os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as graph_file:
                triples = yaml.safe_load(graph_file) or []
            if not isinstance(triples, list):
                exception_string = (
                    f"TripleMetaStore - _read_graph: {self.path} does not contain a"
                    + " list of triples"
                )
                self.logger.error(exception_string)
                raise MetaStoreError(exception_string)
            for subject, predicate, obj in triples:
                validate_property(predicate, obj)
                self._link(Identifier.coerce(subject), predicate, obj)

        if os.path.exists(self.journal_path):
            with open(self.journal_path, "r", encoding="utf-8") as journal_file:
                for changes in yaml.safe_load_all(journal_file):
                    for subject, predicate, obj in changes or []:
                        subject = Identifier.coerce(subject)
                        if obj is None:
                            validate_key(predicate)
                            self._unlink(subject, predicate)
                        else:
                            validate_property(predicate, obj)
                            self._link(subject, predicate, obj)
                        self._journal_entries += 1
            self.logger.debug(
                "TripleMetaStore - _read_graph: Replayed %d journal entries from %s",
                self._journal_entries,
                self.journal_path,
            )

    def _write_graph(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        triples = [[str(subject), predicate, obj] for subject, predicate, obj in self.triples()]
        with NamedTemporaryFile(
            "w", dir=directory, prefix=".triples-", delete=False, encoding="utf-8"
        ) as tmp_file:
            yaml.safe_dump(triples, tmp_file, default_flow_style=None)
        try:
            os.replace(tmp_file.name, self.path)
        except OSError:
            os.remove(tmp_file.name)
            raise
        if os.path.exists(self.journal_path):
            os.remove(self.journal_path)
        self._journal_entries = 0
        self.logger.debug(
            "TripleMetaStore - _write_graph: Wrote %d triples to %s", len(triples), self.path
        )

    def _append_journal(self, changes):
        with open(self.journal_path, "a", encoding="utf-8") as journal_file:
            yaml.safe_dump(
                changes, journal_file, explicit_start=True, default_flow_style=None
            )
        self._journal_entries += len(changes)

    def _persist(self):
        """Write the changes recorded in the undo log to the graph file or journal."""
        if self._rewrite or not os.path.exists(self.path):
            self._write_graph()
            return
        touched = {}
        for subject, predicate, _ in self._undo:
            touched[(subject, predicate)] = None
        changes = [
            [str(subject), predicate, self.spo.get(subject, {}).get(predicate)]
            for subject, predicate in touched
        ]
        self._append_journal(changes)
        threshold = max(resourcestore_config.JOURNAL_COMPACT_MIN, len(self.spo))
        if self._journal_entries > threshold:
            self.logger.debug(
                "TripleMetaStore - _persist: Compacting %d journal entries",
                self._journal_entries,
            )
            # The journal already holds this commit, so a failed rewrite keeps it
            try:
                self._write_graph()
            except OSError as err:
                self.logger.warning(
                    "TripleMetaStore - _persist: Unable to compact %s, keeping the"
                    + " journal. %s",
                    self.path,
                    repr(err),
                )

    def compact(self):
        """Rewrite the graph file from the current graph and drop the journal."""
        if not self.path:
            return
        with self.graph_lock:
            self._write_graph()

    @contextmanager
    def transaction(self):
        with self.graph_lock:
            outermost = self._undo is None
            if outermost:
                self._undo = []
                self._rewrite = False
            try:
                yield self
                if outermost and self._undo and self.path:
                    self._persist()
            except BaseException:
                if outermost:
                    self.logger.debug(
                        "TripleMetaStore - transaction: Rolling back transaction"
                    )
                    self._rollback()
                raise
            finally:
                if outermost:
                    self._undo = None

    # MetaStore API

    def get(self, identifier, key):
        validate_key(key)
        with self.graph_lock:
            return self.spo.get(Identifier.coerce(identifier), {}).get(key)

    def get_all(self, identifier):
        with self.graph_lock:
            return dict(self.spo.get(Identifier.coerce(identifier), {}))

    def set(self, identifier, key, value):
        validate_property(key, value)
        identifier = Identifier.coerce(identifier)
        with self.transaction():
            self._add_triple(identifier, key, value)

    def set_all(self, identifier, properties):
        properties = validate_properties(properties)
        identifier = Identifier.coerce(identifier)
        with self.transaction():
            self._remove_subject(identifier)
            for key, value in properties.items():
                self._add_triple(identifier, key, value)

    def update(self, identifier, properties):
        properties = validate_properties(properties)
        identifier = Identifier.coerce(identifier)
        with self.transaction():
            for key, value in properties.items():
                self._add_triple(identifier, key, value)

    def has(self, identifier, key):
        validate_key(key)
        with self.graph_lock:
            return key in self.spo.get(Identifier.coerce(identifier), {})

    def has_resource(self, identifier):
        with self.graph_lock:
            return Identifier.coerce(identifier) in self.spo

    def delete_property(self, identifier, key):
        self.delete_properties(identifier, key)

    def delete_properties(self, identifier, *keys):
        for key in keys:
            validate_key(key)
        identifier = Identifier.coerce(identifier)
        with self.transaction():
            for key in keys:
                self._remove_triple(identifier, key)

    def delete_resource(self, identifier):
        identifier = Identifier.coerce(identifier)
        with self.transaction():
            self._remove_subject(identifier)

    def all_keys(self):
        with self.graph_lock:
            return set(self.pos)

    def all_values(self, key):
        validate_key(key)
        with self.graph_lock:
            return {
                self.spo[subject][key]
                for subjects in self.pos.get(key, {}).values()
                for subject in subjects
            }

    def find_exact(
        self, criteria, order=None, limit=resourcestore_config.DEFAULT_LIMIT, offset=0
    ):
        return self._search(criteria, True, order, limit, offset)

    def find_matching(
        self, criteria, order=None, limit=resourcestore_config.DEFAULT_LIMIT, offset=0
    ):
        return self._search(criteria, False, order, limit, offset)

    def _search(self, criteria, exact, order, limit, offset):
        criteria = normalize_criteria(criteria)
        with self.graph_lock:
            if criteria:
                found = None
                for key, alternatives in criteria.items():
                    subjects = self._subjects_for(key, alternatives, exact)
                    found = subjects if found is None else found & subjects
                    if not found:
                        break
            else:
                found = set(self.spo)
            return sort_and_paginate(
                [(subject, self.spo[subject]) for subject in found],
                order,
                limit,
                offset,
            )

    def _subjects_for(self, key, alternatives, exact):
        """Return the subjects with a `key` triple whose folded object equals (or
        matches) one of `alternatives`."""
        objects = self.pos.get(key, {})
        subjects = set()
        if exact:
            for alternative in alternatives:
                subjects.update(objects.get(alternative, ()))
        else:
            patterns = [glob_to_regex(alternative) for alternative in alternatives]
            for folded, holders in objects.items():
                if any(pattern.match(folded) for pattern in patterns):
                    subjects.update(holders)
        return subjects

    def dump(self):
        with self.graph_lock:
            return {
                str(subject): dict(self.spo[subject]) for subject in sorted(self.spo)
            }

    def load(self, snapshot):
        if not isinstance(snapshot, dict):
            raise TypeError(f"Snapshot must be a dictionary, got {type(snapshot)}")
        resources = [
            (Identifier.coerce(identifier), validate_properties(properties))
            for identifier, properties in snapshot.items()
        ]
        with self.transaction():
            self._undo.append((None, None, (self.spo, self.pos)))
            self._rewrite = True
            self.spo = {}
            self.pos = {}
            for subject, properties in resources:
                for key, value in properties.items():
                    self._link(subject, key, value)
        self.logger.info("TripleMetaStore - load: Loaded %d resources", len(self.spo))

    def count(self):
        with self.graph_lock:
            return len(self.spo)
