"""Core module for SQLMetaStore"""

import itertools
import logging
import sqlite3
import threading
from contextlib import contextmanager
import pg8000
from resourcestore import resourcestore_config
from resourcestore.identifier import Identifier, canonical
from resourcestore.metastore import (
    MetaStore,
    PropertySet,
    fold,
    glob_to_like,
    normalize_criteria,
    validate_key,
    validate_order,
    validate_pagination,
    validate_properties,
    validate_property,
)
from resourcestore.resourcestore_exceptions import ConfigError

# Number of identifiers bound into one `IN (...)` clause
_IN_CHUNK_SIZE = 500


class SQLMetaStore(MetaStore):
    """A relational MetaStore keeping one row per (identifier, property) pair in a
    single `metadata` table. Each row also stores the case-folded value, which the
    finders compare against so that matching is case-insensitive in the same way
    as the other backends.

    Two dialects are supported: SQLite through the standard library `sqlite3`
    module, and PostgreSQL through `pg8000`. Statements are written with `?`
    placeholders and converted for the PostgreSQL driver.

    One connection is shared by all threads and guarded by a reentrant lock. Each
    operation is its own transaction unless it runs inside `transaction()`, in which
    case it joins the outer one; the outermost block commits or rolls back.

    :param dict connection: Connection properties. For SQLite:
        `{"dialect": "sqlite", "database": "<path or :memory:>"}`. For PostgreSQL:
        `{"dialect": "postgres", "db_user", "db_password", "db_host", "db_port",
        "db_name"}`.
    :param logging.Logger logger: Logger to use, defaults to this module's logger.
    """

    postgres_keys = ["db_user", "db_password", "db_host", "db_port", "db_name"]

    def __init__(self, connection=None, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        connection = connection or {"dialect": "sqlite", "database": ":memory:"}
        self.dialect = connection.get("dialect", "sqlite")
        self.db_lock = threading.RLock()
        self._transaction_depth = 0

        if self.dialect == "sqlite":
            self.connection = sqlite3.connect(
                connection.get("database", ":memory:"), check_same_thread=False
            )
            # LIKE compares the folded column, so it must not fold on its own
            self.connection.execute("PRAGMA case_sensitive_like = ON")
            self.collation = "BINARY"
            self.no_limit = "-1"
        elif self.dialect == "postgres":
            for key in self.postgres_keys:
                if key not in connection:
                    exception_string = (
                        "SQLMetaStore - __init__: Missing required postgres connection"
                        + f" key: {key}."
                    )
                    self.logger.critical(exception_string)
                    raise ConfigError(exception_string)
            self.connection = pg8000.connect(
                user=connection["db_user"],
                password=connection["db_password"],
                host=connection["db_host"],
                port=int(connection["db_port"]),
                database=connection["db_name"],
            )
            self.collation = '"C"'
            self.no_limit = "ALL"
        else:
            exception_string = (
                f"SQLMetaStore - __init__: Unsupported dialect '{self.dialect}'."
                + " Must be 'sqlite' or 'postgres'."
            )
            self.logger.critical(exception_string)
            raise ConfigError(exception_string)

        self._create_schema()
        self.logger.debug("SQLMetaStore - Initialized (%s dialect)", self.dialect)

    def _create_schema(self):
        with self.transaction():
            self._execute(
                """CREATE TABLE IF NOT EXISTS metadata (
                    identifier VARCHAR(36) NOT NULL,
                    property TEXT NOT NULL,
                    value TEXT NOT NULL,
                    folded TEXT NOT NULL,
                    PRIMARY KEY (identifier, property)
                )"""
            )
            self._execute(
                "CREATE INDEX IF NOT EXISTS metadata_property_folded"
                + " ON metadata (property, folded)"
            )

    def close(self):
        """Close the database connection."""
        with self.db_lock:
            self.connection.close()

    # Statement helpers

    def _execute(self, statement, params=()):
        """Execute `statement` (written with `?` placeholders) and return the
        cursor."""
        if self.dialect == "postgres":
            statement = statement.replace("?", "%s")
        cursor = self.connection.cursor()
        cursor.execute(statement, tuple(params))
        return cursor

    def _query(self, statement, params=()):
        with self.db_lock:
            return self._execute(statement, params).fetchall()

    def _upsert(self, identifier, key, value):
        self._execute(
            "INSERT INTO metadata (identifier, property, value, folded)"
            + " VALUES (?, ?, ?, ?) ON CONFLICT (identifier, property)"
            + " DO UPDATE SET value = excluded.value, folded = excluded.folded",
            (identifier, key, value, fold(value)),
        )

    @contextmanager
    def transaction(self):
        with self.db_lock:
            self._transaction_depth += 1
            try:
                yield self
                if self._transaction_depth == 1:
                    self.connection.commit()
            except BaseException:
                if self._transaction_depth == 1:
                    self.logger.debug("SQLMetaStore - transaction: Rolling back")
                    self.connection.rollback()
                raise
            finally:
                self._transaction_depth -= 1

    # MetaStore API

    def get(self, identifier, key):
        validate_key(key)
        rows = self._query(
            "SELECT value FROM metadata WHERE identifier = ? AND property = ?",
            (canonical(identifier), key),
        )
        return rows[0][0] if rows else None

    def get_all(self, identifier):
        rows = self._query(
            "SELECT property, value FROM metadata WHERE identifier = ?",
            (canonical(identifier),),
        )
        return dict(rows)

    def set(self, identifier, key, value):
        validate_property(key, value)
        identifier = canonical(identifier)
        with self.transaction():
            self._upsert(identifier, key, value)

    def set_all(self, identifier, properties):
        properties = validate_properties(properties)
        identifier = canonical(identifier)
        with self.transaction():
            self._execute("DELETE FROM metadata WHERE identifier = ?", (identifier,))
            for key, value in properties.items():
                self._upsert(identifier, key, value)

    def update(self, identifier, properties):
        properties = validate_properties(properties)
        identifier = canonical(identifier)
        with self.transaction():
            for key, value in properties.items():
                self._upsert(identifier, key, value)

    def has(self, identifier, key):
        validate_key(key)
        return bool(
            self._query(
                "SELECT 1 FROM metadata WHERE identifier = ? AND property = ?",
                (canonical(identifier), key),
            )
        )

    def has_resource(self, identifier):
        return bool(
            self._query(
                "SELECT 1 FROM metadata WHERE identifier = ? LIMIT 1",
                (canonical(identifier),),
            )
        )

    def delete_property(self, identifier, key):
        self.delete_properties(identifier, key)

    def delete_properties(self, identifier, *keys):
        for key in keys:
            validate_key(key)
        identifier = canonical(identifier)
        with self.transaction():
            for key in keys:
                self._execute(
                    "DELETE FROM metadata WHERE identifier = ? AND property = ?",
                    (identifier, key),
                )

    def delete_resource(self, identifier):
        with self.transaction():
            self._execute(
                "DELETE FROM metadata WHERE identifier = ?", (canonical(identifier),)
            )

    def all_keys(self):
        return {row[0] for row in self._query("SELECT DISTINCT property FROM metadata")}

    def all_values(self, key):
        validate_key(key)
        rows = self._query(
            "SELECT DISTINCT value FROM metadata WHERE property = ?", (key,)
        )
        return {row[0] for row in rows}

    def find_exact(
        self, criteria, order=None, limit=resourcestore_config.DEFAULT_LIMIT, offset=0
    ):
        return self._search(criteria, True, order, limit, offset)

    def find_matching(
        self, criteria, order=None, limit=resourcestore_config.DEFAULT_LIMIT, offset=0
    ):
        return self._search(criteria, False, order, limit, offset)

    def _search(self, criteria, exact, order, limit, offset):
        """Select the matching identifiers in sorted, paginated order, then fetch
        their properties."""
        criteria = normalize_criteria(criteria)
        order = validate_order(order)
        offset, limit = validate_pagination(offset, limit)

        conditions = []
        params = []
        for key, alternatives in criteria.items():
            if not alternatives:
                return []
            if exact:
                test = "folded IN (" + ", ".join("?" * len(alternatives)) + ")"
                values = alternatives
            else:
                test = " OR ".join(["folded LIKE ? ESCAPE '\\'"] * len(alternatives))
                values = [glob_to_like(pattern) for pattern in alternatives]
            conditions.append(
                "identifier IN (SELECT identifier FROM metadata"
                + f" WHERE property = ? AND ({test}))"
            )
            params.append(key)
            params.extend(values)
        where = " WHERE " + " AND ".join(conditions) if conditions else ""

        joins = []
        join_params = []
        sort_terms = []
        for position, key in enumerate(order):
            joins.append(
                f" LEFT JOIN metadata o{position} ON o{position}.identifier ="
                + f" matched.identifier AND o{position}.property = ?"
            )
            join_params.append(key)
            sort_terms.append(
                f"COALESCE(o{position}.value, '') COLLATE {self.collation}"
            )
        sort_terms.append(f"matched.identifier COLLATE {self.collation}")

        statement = (
            "SELECT matched.identifier FROM"
            + f" (SELECT DISTINCT identifier FROM metadata{where}) matched"
            + "".join(joins)
            + " ORDER BY "
            + ", ".join(sort_terms)
            + f" LIMIT {'?' if limit else self.no_limit} OFFSET ?"
        )
        params = params + join_params + ([limit] if limit else []) + [offset]

        with self.db_lock:
            identifiers = [row[0] for row in self._execute(statement, params).fetchall()]
            properties = self._fetch_properties(identifiers)
        return [
            PropertySet(Identifier.parse(identifier), properties.get(identifier, {}))
            for identifier in identifiers
        ]

    def _fetch_properties(self, identifiers):
        """Return a dictionary of identifier strings to property dictionaries."""
        properties = {}
        for start in range(0, len(identifiers), _IN_CHUNK_SIZE):
            chunk = identifiers[start : start + _IN_CHUNK_SIZE]
            rows = self._execute(
                "SELECT identifier, property, value FROM metadata WHERE identifier IN ("
                + ", ".join("?" * len(chunk))
                + ")",
                chunk,
            ).fetchall()
            for identifier, key, value in rows:
                properties.setdefault(identifier, {})[key] = value
        return properties

    def dump(self):
        rows = self._query(
            "SELECT identifier, property, value FROM metadata ORDER BY identifier"
            + f" COLLATE {self.collation}"
        )
        return {
            identifier: {key: value for _, key, value in group}
            for identifier, group in itertools.groupby(rows, key=lambda row: row[0])
        }

    def load(self, snapshot):
        if not isinstance(snapshot, dict):
            raise TypeError(f"Snapshot must be a dictionary, got {type(snapshot)}")
        resources = [
            (canonical(identifier), validate_properties(properties))
            for identifier, properties in snapshot.items()
        ]
        with self.transaction():
            self._execute("DELETE FROM metadata")
            for identifier, properties in resources:
                for key, value in properties.items():
                    self._upsert(identifier, key, value)
        self.logger.info("SQLMetaStore - load: Loaded %d resources", len(resources))

    def count(self):
        return self._query("SELECT COUNT(DISTINCT identifier) FROM metadata")[0][0]
