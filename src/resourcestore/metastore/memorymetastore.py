"""Core module for MemoryMetaStore"""

import logging
import threading
from contextlib import contextmanager
from resourcestore import resourcestore_config
from resourcestore.identifier import Identifier
from resourcestore.metastore import (
    MetaStore,
    match_criteria,
    normalize_criteria,
    sort_and_paginate,
    validate_key,
    validate_properties,
    validate_property,
)


class MemoryMetaStore(MetaStore):
    """An in-memory MetaStore backed by a table of identifiers to property
    dictionaries. Suitable for testing and for stores small enough to rebuild at
    startup.

    Every operation runs under one reentrant lock. A transaction holds that lock for
    its whole block and records the prior property set of each resource it changes,
    restoring them in reverse order if the block raises.

    :param dict connection: Optional `{"table": {...}}` with initial contents in the
        shape returned by `dump`.
    :param logging.Logger logger: Logger to use, defaults to this module's logger.
    """

    def __init__(self, connection=None, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.table = {}
        self.table_lock = threading.RLock()
        self._undo = None
        initial = (connection or {}).get("table")
        if initial:
            self.load(initial)
        self.logger.debug("MemoryMetaStore - Initialized with %d resources", len(self.table))

    @contextmanager
    def transaction(self):
        with self.table_lock:
            outermost = self._undo is None
            if outermost:
                self._undo = []
            try:
                yield self
            except BaseException:
                if outermost:
                    self.logger.debug(
                        "MemoryMetaStore - transaction: Rolling back transaction"
                    )
                    self._rollback()
                raise
            finally:
                if outermost:
                    self._undo = None

    def _remember(self, identifier):
        """Record the current property set of `identifier` when in a transaction."""
        if self._undo is not None:
            properties = self.table.get(identifier)
            if properties is not None:
                properties = dict(properties)
            self._undo.append((identifier, properties))

    def _rollback(self):
        for identifier, properties in reversed(self._undo):
            if identifier is None:
                self.table = properties
            elif properties is None:
                self.table.pop(identifier, None)
            else:
                self.table[identifier] = properties

    def get(self, identifier, key):
        validate_key(key)
        with self.table_lock:
            return self.table.get(Identifier.coerce(identifier), {}).get(key)

    def get_all(self, identifier):
        with self.table_lock:
            return dict(self.table.get(Identifier.coerce(identifier), {}))

    def set(self, identifier, key, value):
        validate_property(key, value)
        identifier = Identifier.coerce(identifier)
        with self.table_lock:
            self._remember(identifier)
            self.table.setdefault(identifier, {})[key] = value

    def set_all(self, identifier, properties):
        properties = validate_properties(properties)
        identifier = Identifier.coerce(identifier)
        with self.table_lock:
            self._remember(identifier)
            if properties:
                self.table[identifier] = properties
            else:
                self.table.pop(identifier, None)

    def update(self, identifier, properties):
        properties = validate_properties(properties)
        identifier = Identifier.coerce(identifier)
        if not properties:
            return
        with self.table_lock:
            self._remember(identifier)
            self.table.setdefault(identifier, {}).update(properties)

    def has(self, identifier, key):
        validate_key(key)
        with self.table_lock:
            return key in self.table.get(Identifier.coerce(identifier), {})

    def has_resource(self, identifier):
        with self.table_lock:
            return Identifier.coerce(identifier) in self.table

    def delete_property(self, identifier, key):
        self.delete_properties(identifier, key)

    def delete_properties(self, identifier, *keys):
        for key in keys:
            validate_key(key)
        identifier = Identifier.coerce(identifier)
        with self.table_lock:
            properties = self.table.get(identifier)
            if properties is None:
                return
            self._remember(identifier)
            for key in keys:
                properties.pop(key, None)
            if not properties:
                del self.table[identifier]

    def delete_resource(self, identifier):
        identifier = Identifier.coerce(identifier)
        with self.table_lock:
            self._remember(identifier)
            self.table.pop(identifier, None)

    def all_keys(self):
        with self.table_lock:
            return {key for properties in self.table.values() for key in properties}

    def all_values(self, key):
        validate_key(key)
        with self.table_lock:
            return {
                properties[key]
                for properties in self.table.values()
                if key in properties
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
        with self.table_lock:
            found = [
                (identifier, properties)
                for identifier, properties in self.table.items()
                if match_criteria(properties, criteria, exact)
            ]
            return sort_and_paginate(found, order, limit, offset)

    def dump(self):
        with self.table_lock:
            return {
                str(identifier): dict(properties)
                for identifier, properties in sorted(self.table.items())
            }

    def load(self, snapshot):
        if not isinstance(snapshot, dict):
            raise TypeError(f"Snapshot must be a dictionary, got {type(snapshot)}")
        table = {}
        for identifier, properties in snapshot.items():
            properties = validate_properties(properties)
            if properties:
                table[Identifier.coerce(identifier)] = properties
        with self.table_lock:
            if self._undo is not None:
                self._undo.append((None, self.table))
            self.table = table
        self.logger.info("MemoryMetaStore - load: Loaded %d resources", len(table))

    def count(self):
        with self.table_lock:
            return len(self.table)
