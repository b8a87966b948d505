"""MetaStore Interface

A MetaStore persists string-valued property sets keyed by resource identifier.
Every backend (in-memory table, SQL, triple graph) implements the same contract;
behaviour shared by all of them lives in the free functions of this module rather
than in backend base classes.
"""

import importlib
import importlib.util
import logging
import re
from abc import ABC, abstractmethod
from collections import namedtuple
from resourcestore import resourcestore_config
from resourcestore.identifier import Identifier
from resourcestore.resourcestore_exceptions import ConfigError, ReservedProperty


class PropertySet(namedtuple("PropertySet", ["identifier", "properties"])):
    """Represents one resource returned by a finder.

    :param Identifier identifier: Identifier of the resource.
    :param dict properties: All of the resource's properties.
    """

    # Default value to prevent dynamic attribute creation
    __slots__ = ()


class MetaStore(ABC):
    """MetaStore is a property store keyed by resource identifier. Property names
    and values are always strings; identifiers may be given as `Identifier` objects
    or canonical strings. Unknown identifiers yield empty results, never errors.

    Finders return lists of `PropertySet` tuples sorted by the requested `order`
    properties (a missing property sorts as the empty string), with ties and the
    unordered case falling back to ascending identifier order.
    """

    # Property names managed by the system and refused by the safe API
    reserved_properties = resourcestore_config.SYSTEM_PROPERTIES

    @abstractmethod
    def get(self, identifier, key):
        """Return the value of property `key` for `identifier`, or `None`."""
        raise NotImplementedError()

    @abstractmethod
    def get_all(self, identifier):
        """Return a dictionary of every property of `identifier` (empty if the
        identifier is unknown)."""
        raise NotImplementedError()

    @abstractmethod
    def set(self, identifier, key, value):
        """Set property `key` of `identifier` to the string `value`.

        :raises TypeError: If `key` or `value` is not a string.
        :raises ValueError: If `key` is empty.
        """
        raise NotImplementedError()

    @abstractmethod
    def set_all(self, identifier, properties):
        """Replace the entire property set of `identifier` with `properties`."""
        raise NotImplementedError()

    @abstractmethod
    def update(self, identifier, properties):
        """Merge `properties` into the existing property set of `identifier`."""
        raise NotImplementedError()

    @abstractmethod
    def has(self, identifier, key):
        """Return `True` if `identifier` has a property named `key`."""
        raise NotImplementedError()

    @abstractmethod
    def has_resource(self, identifier):
        """Return `True` if `identifier` has any properties."""
        raise NotImplementedError()

    @abstractmethod
    def delete_property(self, identifier, key):
        """Remove property `key` from `identifier`. Unknown keys are ignored."""
        raise NotImplementedError()

    @abstractmethod
    def delete_properties(self, identifier, *keys):
        """Remove every property named in `keys` from `identifier`."""
        raise NotImplementedError()

    @abstractmethod
    def delete_resource(self, identifier):
        """Remove the whole property set of `identifier`."""
        raise NotImplementedError()

    @abstractmethod
    def all_keys(self):
        """Return the set of property names in use across all resources."""
        raise NotImplementedError()

    @abstractmethod
    def all_values(self, key):
        """Return the set of distinct values of property `key` across all
        resources."""
        raise NotImplementedError()

    @abstractmethod
    def find_exact(
        self, criteria, order=None, limit=resourcestore_config.DEFAULT_LIMIT, offset=0
    ):
        """Find resources whose properties equal the given criteria.

        `criteria` maps property names to a value or a list of alternative values.
        Alternatives for one key are OR'ed, keys are AND'ed together. Comparison is
        case-insensitive and applies to the whole value. An empty `criteria`
        matches every resource.

        :param dict criteria: Property names to value(s).
        :param list order: Property names to sort by, in priority order.
        :param int limit: Maximum number of results, 0 or `None` for no limit.
        :param int offset: Number of sorted results to skip.

        :return: list - `PropertySet` tuples.
        """
        raise NotImplementedError()

    @abstractmethod
    def find_matching(
        self, criteria, order=None, limit=resourcestore_config.DEFAULT_LIMIT, offset=0
    ):
        """Find resources whose properties match the given glob patterns, where `*`
        matches any run of characters. Matching is case-insensitive and anchored
        to the whole value; otherwise the same as `find_exact`.

        :return: list - `PropertySet` tuples.
        """
        raise NotImplementedError()

    @abstractmethod
    def dump(self):
        """Return the whole store as a dictionary of canonical identifier strings
        to property dictionaries."""
        raise NotImplementedError()

    @abstractmethod
    def load(self, snapshot):
        """Replace the entire contents of the store with `snapshot` (a dictionary
        in the shape returned by `dump`)."""
        raise NotImplementedError()

    @abstractmethod
    def transaction(self):
        """Return a context manager that executes its block with the backend's best
        atomicity guarantee. Writes made in the block become visible to other
        callers all at once, and are discarded if the block raises. Nested
        transactions join the outermost one.
        """
        raise NotImplementedError()

    @abstractmethod
    def count(self):
        """Return the number of resources that have properties."""
        raise NotImplementedError()

    # Derived operations

    def get_resource_set(self, order=None, limit=0, offset=0):
        """Return every resource as a `PropertySet`, sorted and paginated like the
        finders. `limit` defaults to no limit."""
        return self.find_exact({}, order=order, limit=limit, offset=offset)

    def each_resource(self, func):
        """Call `func(identifier, properties)` once for every resource, in
        ascending identifier order."""
        for identifier, properties in self.get_resource_set():
            func(identifier, properties)

    def migrate(self, func):
        """Hand every resource to `func(identifier, properties)` inside a
        transaction, for transfer to another store."""
        with self.transaction():
            self.each_resource(func)

    def migrate_from(self, other):
        """Copy every resource of the MetaStore `other` into this store, replacing
        the property sets of identifiers present in both.

        :param MetaStore other: Store to copy from.
        """
        logger = getattr(self, "logger", logging.getLogger(__name__))
        logger.info(
            "%s - migrate_from: Migrating resources from %s",
            type(self).__name__,
            type(other).__name__,
        )
        with self.transaction():
            other.migrate(self.set_all)

    # Safe API: refuses to modify reserved properties

    def set_safe(self, identifier, key, value):
        """Like `set`, but raises `ReservedProperty` for a reserved `key`."""
        check_reserved(key, self.reserved_properties)
        self.set(identifier, key, value)

    def set_all_safe(self, identifier, properties):
        """Like `set_all`, but reserved keys are dropped from `properties` and the
        resource's existing reserved properties are kept."""
        with self.transaction():
            kept = {
                key: value
                for key, value in self.get_all(identifier).items()
                if key in self.reserved_properties
            }
            kept.update(strip_reserved(properties, self.reserved_properties))
            self.set_all(identifier, kept)

    def update_safe(self, identifier, properties):
        """Like `update`, but reserved keys are dropped from `properties`."""
        self.update(identifier, strip_reserved(properties, self.reserved_properties))

    def delete_safe(self, identifier, key):
        """Like `delete_property`, but raises `ReservedProperty` for a reserved
        `key`."""
        check_reserved(key, self.reserved_properties)
        self.delete_property(identifier, key)

    def delete_properties_safe(self, identifier, *keys):
        """Like `delete_properties`, but reserved keys are skipped."""
        keys = [key for key in keys if key not in self.reserved_properties]
        self.delete_properties(identifier, *keys)


class MetaStoreFactory:
    """A factory class for creating `MetaStore`-like objects.

    The backend is chosen by the `metastore_backend` property (one of the keys of
    `resourcestore_config.METASTORE_BACKENDS`), or explicitly by `module_name` and
    `class_name`.
    """

    @staticmethod
    def get_metastore(properties=None, module_name=None, class_name=None, logger=None):
        """Get a `MetaStore`-like object.

        :param dict properties: MetaStore properties (`metastore_backend`,
            `metastore_connection`). Defaults to the in-memory backend.
        :param str module_name: Module to load the class from (ex.
            "resourcestore.metastore.sqlmetastore").
        :param str class_name: Name of the class in `module_name` (ex.
            "SQLMetaStore").
        :param logging.Logger logger: Logger handed to the MetaStore.

        :raises ConfigError: If the backend name is unknown.
        :raises ModuleNotFoundError: If the module is not found.
        :raises AttributeError: If the class does not exist within the module.

        :return: MetaStore - The configured MetaStore.
        """
        properties = properties or {}
        if module_name is None or class_name is None:
            backend = properties.get(
                "metastore_backend", resourcestore_config.METASTORE_BACKEND
            )
            if backend not in resourcestore_config.METASTORE_BACKENDS:
                raise ConfigError(
                    f"MetaStoreFactory - get_metastore: Unknown backend '{backend}'."
                    + f" Must be one of {sorted(resourcestore_config.METASTORE_BACKENDS)}"
                )
            module_name, class_name = resourcestore_config.METASTORE_BACKENDS[backend]

        # Validate module
        if importlib.util.find_spec(module_name) is None:
            raise ModuleNotFoundError(f"No module found for '{module_name}'")

        imported_module = importlib.import_module(module_name)

        # If class is not part of module, raise error
        if hasattr(imported_module, class_name):
            metastore_class = getattr(imported_module, class_name)
            return metastore_class(
                properties.get("metastore_connection"), logger=logger
            )
        raise AttributeError(
            f"Class name '{class_name}' is not an attribute of module '{module_name}'"
        )


# Shared helpers


def validate_key(key):
    """Ensure a property name is a non-empty string."""
    if not isinstance(key, str):
        raise TypeError(f"Property names must be strings, got {type(key)}")
    if not key:
        raise ValueError("Property names must not be empty")


def validate_property(key, value):
    """Ensure a property name and value are strings."""
    validate_key(key)
    if not isinstance(value, str):
        raise TypeError(
            f"Property values must be strings, got {type(value)} for '{key}'"
        )


def validate_properties(properties):
    """Ensure `properties` is a dictionary of string names to string values.

    :return: A copy of `properties` as a plain dictionary.
    :rtype: dict
    """
    if not isinstance(properties, dict):
        raise TypeError(f"Properties must be a dictionary, got {type(properties)}")
    for key, value in properties.items():
        validate_property(key, value)
    return dict(properties)


def fold(value):
    """Case-fold a value for case-insensitive comparisons. Every backend compares
    folded values so they agree on what matches."""
    return value.lower()


def check_reserved(key, reserved=resourcestore_config.SYSTEM_PROPERTIES):
    """Raise `ReservedProperty` if `key` is a reserved property name."""
    if key in reserved:
        raise ReservedProperty(
            f"The '{key}' property is used by the system and cannot be modified."
        )


def strip_reserved(properties, reserved=resourcestore_config.SYSTEM_PROPERTIES):
    """Return a copy of `properties` without any reserved keys."""
    return {key: value for key, value in properties.items() if key not in reserved}


def normalize_criteria(criteria):
    """Validate search criteria and return them as property names mapped to lists
    of folded alternatives.

    :param dict criteria: Property names to a value or a list of values.

    :return: dict - Property names to lists of folded strings.
    """
    if not isinstance(criteria, dict):
        raise TypeError(f"Criteria must be a dictionary, got {type(criteria)}")
    normalized = {}
    for key, values in criteria.items():
        validate_key(key)
        if isinstance(values, str):
            values = [values]
        values = list(values)
        for value in values:
            if not isinstance(value, str):
                raise TypeError(
                    f"Criteria values must be strings, got {type(value)} for '{key}'"
                )
        normalized[key] = [fold(value) for value in values]
    return normalized


def glob_to_regex(pattern):
    """Translate a glob pattern, where `*` matches any run of characters, into a
    compiled regular expression anchored to the whole (folded) value."""
    parts = [re.escape(part) for part in fold(pattern).split("*")]
    return re.compile(".*".join(parts) + r"\Z", re.DOTALL)


def glob_to_like(pattern, escape="\\"):
    """Translate a glob pattern into a SQL `LIKE` pattern for folded values. `%`, `_`
    and the escape character itself are escaped."""
    pattern = fold(pattern)
    for char in (escape, "%", "_"):
        pattern = pattern.replace(char, escape + char)
    return pattern.replace("*", "%")


def match_criteria(properties, criteria, exact=True):
    """Return `True` if `properties` satisfies normalized `criteria`.

    :param dict properties: Properties of one resource.
    :param dict criteria: Output of `normalize_criteria`.
    :param bool exact: Compare whole values when `True`, glob patterns otherwise.
    """
    for key, alternatives in criteria.items():
        value = properties.get(key)
        if value is None:
            return False
        value = fold(value)
        if exact:
            if value not in alternatives:
                return False
        elif not any(glob_to_regex(pattern).match(value) for pattern in alternatives):
            return False
    return True


def sort_and_paginate(resources, order=None, limit=0, offset=0):
    """Sort `(identifier, properties)` pairs by the `order` properties (missing
    properties sort as ""), falling back to identifier order, then apply `offset`
    and `limit`.

    :param iterable resources: `(Identifier, dict)` pairs.
    :param list order: Property names to sort by.
    :param int limit: Maximum number of results, 0 or `None` for no limit.
    :param int offset: Number of results to skip.

    :return: list - `PropertySet` tuples.
    """
    order = validate_order(order)
    offset, limit = validate_pagination(offset, limit)
    ordered = sorted(
        resources,
        key=lambda item: (tuple(item[1].get(key, "") for key in order), item[0]),
    )
    end = None if not limit else offset + limit
    return [
        PropertySet(Identifier.coerce(identifier), dict(properties))
        for identifier, properties in ordered[offset:end]
    ]


def validate_order(order):
    """Return `order` as a list of property names."""
    if order is None:
        return []
    if isinstance(order, str):
        order = [order]
    order = list(order)
    for key in order:
        validate_key(key)
    return order


def validate_pagination(offset, limit):
    """Validate `offset` and `limit`, returning them with `None` normalized to 0."""
    offset = offset or 0
    limit = limit or 0
    for name, number in (("offset", offset), ("limit", limit)):
        if not isinstance(number, int) or number < 0:
            raise ValueError(f"{name} must be a non-negative integer, got {number!r}")
    return offset, limit
