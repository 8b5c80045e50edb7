"""Tests for rule table parsing, move resolution and the rule cache."""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from fhir_marshal.config import DEFAULT_RULES_DIR
from fhir_marshal.errors import MovePathError, RuleTableNotFoundError
from fhir_marshal.services.rules import (
    EMPTY_RULE,
    MoveRule,
    PlainRule,
    ReferenceRule,
    RuleTable,
    RuleTableCache,
    UnionRule,
    load_rule_table,
    parse_rule,
    rule_file_name,
)


class TestParseRule:
    """Tests for parse_rule function."""

    def test_union(self):
        """tr/act union keeps its argument and key as rename."""
        node = parse_rule({"tr/act": "union", "tr/arg": {"type": "boolean", "key": "deceased"}})
        assert isinstance(node, UnionRule)
        assert node.arg == {"type": "boolean", "key": "deceased"}
        assert node.rename == "deceased"

    def test_reference_collection_flag(self):
        """isCollection must be literally true."""
        assert parse_rule({"tr/act": "reference", "isCollection": True}).is_collection
        assert not parse_rule({"tr/act": "reference", "isCollection": "yes"}).is_collection
        assert isinstance(parse_rule({"tr/act": "reference"}), ReferenceRule)

    def test_move(self):
        """tr/move produces a MoveRule regardless of other keys."""
        node = parse_rule({"tr/move": ["Identifier"], "system": {}})
        assert isinstance(node, MoveRule)
        assert node.path == ["Identifier"]

    def test_plain_with_children(self):
        """Other keys become child rules; reserved keys do not."""
        node = parse_rule({"tr/arg": {"key": "renamed"}, "child": {"tr/act": "reference"}})
        assert isinstance(node, PlainRule)
        assert node.rename == "renamed"
        assert set(node.children) == {"child"}
        assert isinstance(node.children["child"], ReferenceRule)

    def test_unknown_action_is_plain(self):
        """An unknown directive is ignored."""
        node = parse_rule({"tr/act": "explode", "child": {}})
        assert isinstance(node, PlainRule)
        assert "child" in node.children

    def test_non_object_is_empty(self):
        """Scalars in a rule file become empty rules."""
        assert parse_rule(True) == EMPTY_RULE


class TestRuleTable:
    """Tests for RuleTable lookup and move resolution."""

    def test_path_index(self, rule_table):
        """Nested nodes are reachable by path."""
        node = rule_table.lookup(("Patient", "contact", "organization"))
        assert isinstance(node, ReferenceRule)
        assert rule_table.lookup(("Patient", "nope")) is None

    def test_node_for_and_contains(self, rule_table):
        """Top-level lookups by type name."""
        assert "Patient" in rule_table
        assert "Quantity" not in rule_table
        assert rule_table.node_for("Quantity") is None

    def test_resolve_move(self, rule_table):
        """A move resolves to the target node."""
        move = rule_table.lookup(("Patient", "identifier"))
        resolved = rule_table.resolve(move)
        assert isinstance(resolved, PlainRule)
        assert isinstance(resolved.children["assigner"], ReferenceRule)

    def test_resolve_non_move_is_identity(self, rule_table):
        """Non-move nodes resolve to themselves."""
        node = rule_table.node_for("Patient")
        assert rule_table.resolve(node) is node

    def test_move_rename_wins(self):
        """A rename on the moving rule overrides the target's."""
        table = RuleTable.from_dict(
            "t",
            {
                "Identifier": {"system": {}},
                "Patient": {"identifier": {"tr/move": ["Identifier"], "tr/arg": {"key": "ids"}}},
            },
        )
        resolved = table.resolve(table.lookup(("Patient", "identifier")))
        assert resolved.rename == "ids"
        assert "system" in resolved.children

    def test_dangling_move(self):
        """A path that resolves to nothing raises MovePathError."""
        table = RuleTable.from_dict("t", {"Patient": {"x": {"tr/move": ["Missing"]}}})
        with pytest.raises(MovePathError, match="not found"):
            table.resolve(table.lookup(("Patient", "x")))

    @pytest.mark.parametrize("path", ["Identifier", [], [""], [1, 2]])
    def test_malformed_move(self, path):
        """Move paths must be non-empty lists of non-empty strings."""
        table = RuleTable.from_dict("t", {"Identifier": {}, "Patient": {"x": {"tr/move": path}}})
        with pytest.raises(MovePathError):
            table.resolve(table.lookup(("Patient", "x")))

    def test_cyclic_move(self):
        """Move cycles are detected."""
        table = RuleTable.from_dict("t", {"A": {"tr/move": ["B"]}, "B": {"tr/move": ["A"]}})
        with pytest.raises(MovePathError, match="hops"):
            table.resolve(table.node_for("A"))


class TestLoadRuleTable:
    """Tests for load_rule_table function."""

    def test_loads_file(self, tmp_path):
        """Reads fhirbase-import-<version>.json from the directory."""
        (tmp_path / rule_file_name("9.9.9")).write_text(json.dumps({"Patient": {}}))
        table = load_rule_table("9.9.9", tmp_path)
        assert table.version == "9.9.9"
        assert "Patient" in table

    def test_missing_file(self, tmp_path):
        """Missing file raises RuleTableNotFoundError."""
        with pytest.raises(RuleTableNotFoundError, match="Cannot find"):
            load_rule_table("1.0.0", tmp_path)

    @pytest.mark.parametrize("content", ["{not json", "[]", "{}"])
    def test_unusable_file(self, tmp_path, content):
        """Unparseable, non-object or empty files are rejected."""
        (tmp_path / rule_file_name("1.0.0")).write_text(content)
        with pytest.raises(RuleTableNotFoundError):
            load_rule_table("1.0.0", tmp_path)

    @pytest.mark.parametrize("version", ["4.0.0", "3.3.0"])
    def test_packaged_tables(self, version):
        """The packaged rule files load and every move resolves."""
        table = load_rule_table(version, DEFAULT_RULES_DIR)
        assert "Patient" in table
        for name in list(table.root):
            table.resolve(table.node_for(name))


class TestRuleTableCache:
    """Tests for RuleTableCache."""

    def test_loads_once(self, tmp_path):
        """Concurrent first use loads the table exactly once."""
        (tmp_path / rule_file_name("1.0.0")).write_text(json.dumps({"Patient": {}}))
        real_load = load_rule_table

        def slow_load(version, rules_dir):
            time.sleep(0.05)
            return real_load(version, rules_dir)

        cache = RuleTableCache(rules_dir=tmp_path)
        with patch("fhir_marshal.services.rules.load_rule_table", side_effect=slow_load) as mock_load:
            with ThreadPoolExecutor(max_workers=8) as pool:
                tables = list(pool.map(lambda _: cache.get("1.0.0"), range(8)))

        assert mock_load.call_count == 1
        assert all(t is tables[0] for t in tables)

    def test_failed_load_not_cached(self, tmp_path):
        """A missing version raises and is retried on the next call."""
        cache = RuleTableCache(rules_dir=tmp_path)
        with pytest.raises(RuleTableNotFoundError):
            cache.get("1.0.0")
        assert "1.0.0" not in cache

        (tmp_path / rule_file_name("1.0.0")).write_text(json.dumps({"Patient": {}}))
        assert cache.get("1.0.0").version == "1.0.0"

    def test_put_and_clear(self, rule_table):
        """Registered tables are served without disk access until cleared."""
        cache = RuleTableCache(rules_dir="/nonexistent")
        cache.put(rule_table)
        assert cache.get(rule_table.version) is rule_table
        cache.clear()
        assert rule_table.version not in cache

    def test_thread_safe_reads(self, rule_cache, rule_table):
        """Reads from many threads see the same table."""
        seen = []
        lock = threading.Lock()

        def read():
            table = rule_cache.get(rule_table.version)
            with lock:
                seen.append(table)

        threads = [threading.Thread(target=read) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(seen) == 10
        assert all(t is rule_table for t in seen)
