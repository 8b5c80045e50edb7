"""Transformation rule tables.

A rule file (``fhirbase-import-<version>.json``) is a nested mapping from field
name to rule node. Reserved keys inside a node:

- ``tr/act``: directive, ``"union"`` or ``"reference"``
- ``tr/arg``: directive arguments (``type`` for unions, ``key`` for renames)
- ``tr/move``: path from the table root whose rule applies instead
- ``isCollection``: keep reference results as a list

Every other key is a child rule. Nodes are parsed once into the closed set
``PlainRule | UnionRule | ReferenceRule | MoveRule``, and every node is indexed
by its path so ``tr/move`` resolves with a dictionary lookup.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Union

from fhir_marshal.config import settings
from fhir_marshal.errors import MovePathError, RuleTableNotFoundError

logger = logging.getLogger(__name__)

ACTION_KEY = "tr/act"
ARG_KEY = "tr/arg"
MOVE_KEY = "tr/move"
COLLECTION_KEY = "isCollection"
RESERVED_KEYS = frozenset([ACTION_KEY, ARG_KEY, MOVE_KEY, COLLECTION_KEY])

# Longest chain of tr/move hops followed before giving up
MAX_MOVE_HOPS = 32


def rule_file_name(version: str) -> str:
    return f"fhirbase-import-{version}.json"


# =============================================================================
# Rule node variants
# =============================================================================


@dataclass(frozen=True)
class PlainRule:
    """Structural node: recurse into children, optionally renaming the key."""

    children: Mapping[str, RuleNode] = field(default_factory=dict)
    rename: str | None = None


@dataclass(frozen=True)
class UnionRule:
    """Choice field. ``arg`` is the raw tr/arg, validated when applied."""

    arg: Any = None
    rename: str | None = None


@dataclass(frozen=True)
class ReferenceRule:
    """Reference field normalised to {id, resourceType, display}."""

    is_collection: bool = False
    rename: str | None = None


@dataclass(frozen=True)
class MoveRule:
    """Redirects to the rule found at ``path``. ``path`` is the raw tr/move value."""

    path: Any = None
    rename: str | None = None


RuleNode = Union[PlainRule, UnionRule, ReferenceRule, MoveRule]

EMPTY_RULE = PlainRule()


def _rename_of(arg: Any) -> str | None:
    if isinstance(arg, dict):
        key = arg.get("key")
        if isinstance(key, str) and key:
            return key
    return None


def parse_rule(raw: Any) -> RuleNode:
    """Parse one raw JSON node (and its subtree) into a rule variant.

    Args:
        raw: Node from the rule file. Non-objects become empty plain rules.

    Returns:
        The parsed RuleNode.
    """
    if not isinstance(raw, dict):
        return EMPTY_RULE

    arg = raw.get(ARG_KEY)
    rename = _rename_of(arg)

    if MOVE_KEY in raw:
        return MoveRule(path=raw[MOVE_KEY], rename=rename)

    action = raw.get(ACTION_KEY)
    if action == "union":
        return UnionRule(arg=arg, rename=rename)
    if action == "reference":
        return ReferenceRule(is_collection=raw.get(COLLECTION_KEY) is True, rename=rename)
    if action is not None:
        logger.warning("Ignoring unknown transform action %r", action)

    children = {k: parse_rule(v) for k, v in raw.items() if k not in RESERVED_KEYS}
    return PlainRule(children=children, rename=rename)


def _children_of(node: RuleNode) -> Mapping[str, RuleNode]:
    if isinstance(node, PlainRule):
        return node.children
    return {}


# =============================================================================
# Rule table
# =============================================================================


class RuleTable:
    """Parsed, read-only rule table for one schema version."""

    def __init__(self, version: str, root: Mapping[str, RuleNode]):
        self.version = version
        self.root: Mapping[str, RuleNode] = dict(root)
        self._index: dict[tuple[str, ...], RuleNode] = {}
        self._build_index()

    @classmethod
    def from_dict(cls, version: str, data: Mapping[str, Any]) -> RuleTable:
        return cls(version, {name: parse_rule(node) for name, node in data.items()})

    def _build_index(self) -> None:
        stack: list[tuple[tuple[str, ...], RuleNode]] = [
            ((name,), node) for name, node in self.root.items()
        ]
        while stack:
            path, node = stack.pop()
            self._index[path] = node
            for name, child in _children_of(node).items():
                stack.append(((*path, name), child))

    def node_for(self, name: str) -> RuleNode | None:
        """Top-level rule for a resource or complex type name."""
        return self.root.get(name)

    def lookup(self, path: tuple[str, ...]) -> RuleNode | None:
        return self._index.get(path)

    def resolve(self, node: RuleNode) -> RuleNode:
        """Follow tr/move redirections until a non-move rule is reached.

        A rename carried by the moving rule wins over one on the target.

        Raises:
            MovePathError: If a path is malformed, dangling, or cyclic.
        """
        rename = None
        hops = 0
        while isinstance(node, MoveRule):
            rename = rename or node.rename
            hops += 1
            if hops > MAX_MOVE_HOPS:
                raise MovePathError(f"tr/move chain longer than {MAX_MOVE_HOPS} hops")
            path = node.path
            if (
                not isinstance(path, list)
                or not path
                or not all(isinstance(segment, str) and segment for segment in path)
            ):
                raise MovePathError(f"tr/move path must be a non-empty list of strings: {path!r}")
            target = self._index.get(tuple(path))
            if target is None:
                raise MovePathError(f"tr/move path {'/'.join(path)} not found in rule table")
            node = target

        if rename and getattr(node, "rename", None) != rename:
            return _with_rename(node, rename)
        return node

    def __contains__(self, name: str) -> bool:
        return name in self.root

    def __len__(self) -> int:
        return len(self._index)


def _with_rename(node: RuleNode, rename: str) -> RuleNode:
    if isinstance(node, PlainRule):
        return PlainRule(children=node.children, rename=rename)
    if isinstance(node, UnionRule):
        return UnionRule(arg=node.arg, rename=rename)
    if isinstance(node, ReferenceRule):
        return ReferenceRule(is_collection=node.is_collection, rename=rename)
    return node


def load_rule_table(version: str, rules_dir: Path) -> RuleTable:
    """Read and parse the rule file for a version.

    Args:
        version: Schema version, e.g. "4.0.0".
        rules_dir: Directory holding fhirbase-import-<version>.json files.

    Returns:
        The parsed RuleTable.

    Raises:
        RuleTableNotFoundError: If the file is missing, empty, or not a JSON object.
    """
    path = Path(rules_dir) / rule_file_name(version)
    if not path.is_file():
        raise RuleTableNotFoundError(f"Cannot find transformation file {path}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RuleTableNotFoundError(f"Cannot load transformation file {path}: {e}") from e

    if not isinstance(data, dict) or not data:
        raise RuleTableNotFoundError(f"Cannot read transformation file {path}")

    table = RuleTable.from_dict(version, data)
    logger.info("Loaded rule table %s (%d nodes) from %s", version, len(table), path)
    return table


class RuleTableCache:
    """Load-once store of rule tables keyed by version.

    Loading happens under a lock; once a version is present it is read
    without locking since tables are never mutated after construction.
    """

    def __init__(self, rules_dir: Path | None = None):
        self._rules_dir = rules_dir
        self._tables: dict[str, RuleTable] = {}
        self._lock = threading.Lock()

    @property
    def rules_dir(self) -> Path:
        if self._rules_dir is not None:
            return Path(self._rules_dir)
        return settings.rules_dir

    def get(self, version: str) -> RuleTable:
        """Return the table for a version, loading it on first use.

        Raises:
            RuleTableNotFoundError: If the version's rule file cannot be loaded.
        """
        table = self._tables.get(version)
        if table is not None:
            return table

        with self._lock:
            table = self._tables.get(version)
            if table is None:
                table = load_rule_table(version, self.rules_dir)
                self._tables[version] = table
        return table

    def preload(self, version: str) -> None:
        """Warm the cache before a load starts."""
        self.get(version)

    def put(self, table: RuleTable) -> None:
        """Register an already-built table (used for embedded or test tables)."""
        with self._lock:
            self._tables[table.version] = table

    def clear(self) -> None:
        with self._lock:
            self._tables.clear()

    def __contains__(self, version: str) -> bool:
        return version in self._tables


default_cache = RuleTableCache()
