"""Rule-driven restructuring of FHIR resources into the fhirbase storage shape.

The transformation walks a resource alongside the rule node for its type:

- fields without a rule are copied verbatim under their original key
- ``reference`` rules normalise references to {id, resourceType, display}
- ``union`` rules resolve choice fields, e.g. ``deceasedBoolean: true`` becomes
  ``deceased: {"boolean": true}``
- plain rules recurse (element by element for arrays) and may rename the key
- ``tr/move`` rules are resolved through the table's path index first

The input tree is never mutated; untouched subtrees are shared with the output.
"""

import logging
from typing import Any, Mapping

from fhir_marshal.errors import MissingResourceTypeError, UnionArgumentError
from fhir_marshal.services.rules import (
    EMPTY_RULE,
    PlainRule,
    ReferenceRule,
    RuleNode,
    RuleTable,
    RuleTableCache,
    UnionRule,
    default_cache,
)
from fhir_marshal.utils.fhir_helpers import get_resource_type, split_reference

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "Reference"


# =============================================================================
# References
# =============================================================================


def normalize_reference(value: Any) -> dict[str, Any]:
    """Normalise one FHIR Reference to {id, resourceType, display}.

    The ``reference`` string wins when it has the "Type/id" form, otherwise a
    "Type/id" shaped ``display`` is used. When neither parses the result is a
    display-only reference; a non-conforming reference string (e.g. a
    ``urn:uuid:`` value) becomes the display when there is no display.

    Args:
        value: Reference object, or a bare reference string.

    Returns:
        Normalised reference dict.
    """
    if isinstance(value, str):
        value = {"reference": value}
    if not isinstance(value, dict):
        return {}

    reference = value.get("reference")
    display = value.get("display")
    reference = reference if isinstance(reference, str) and reference else None
    display = display if isinstance(display, str) and display else None

    parsed = split_reference(reference) or split_reference(display)
    if parsed is None:
        fallback = display or reference
        return {"display": fallback} if fallback else {}

    resource_type, resource_id = parsed
    result: dict[str, Any] = {"id": resource_id, "resourceType": resource_type}
    if display:
        result["display"] = display
    return result


def normalize_references(value: Any, is_collection: bool) -> Any:
    """Normalise a single reference or a list of them.

    Unless ``is_collection`` is true the first reference is returned on its
    own; an empty input then yields None.
    """
    items = value if isinstance(value, list) else [value]
    references = [normalize_reference(item) for item in items]
    if is_collection:
        return references
    return references[0] if references else None


# =============================================================================
# Engine
# =============================================================================


class TransformEngine:
    """Applies version-specific rule tables to resources.

    Stateless per call; rule tables come from an injectable cache that loads
    each version once.
    """

    def __init__(self, cache: RuleTableCache | None = None):
        self.cache = cache or default_cache

    def transform(self, resource: dict[str, Any], version: str) -> dict[str, Any]:
        """Restructure a resource according to the rule table for ``version``.

        Args:
            resource: Parsed FHIR resource.
            version: Rule table version, e.g. "4.0.0".

        Returns:
            New, transformed resource tree.

        Raises:
            RuleTableNotFoundError: If the version's table cannot be loaded.
            MissingResourceTypeError: If the resource has no resourceType.
            UnionArgumentError: If a union rule's tr/arg is malformed.
            MovePathError: If a tr/move path is malformed or dangling.
        """
        table = self.cache.get(version)

        resource_type = get_resource_type(resource)
        if not resource_type:
            raise MissingResourceTypeError(
                f"Cannot determine resourceType for resource with keys {sorted(resource)[:10]}"
            )

        node = table.node_for(resource_type)
        if node is None:
            logger.debug("No rules for %s in %s; passing through", resource_type, version)
            node = EMPTY_RULE
        node = table.resolve(node)
        children = node.children if isinstance(node, PlainRule) else {}
        return _transform_object(resource, children, table)


def _transform_object(
    obj: dict[str, Any],
    rules: Mapping[str, RuleNode],
    table: RuleTable,
) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in obj.items():
        rule = rules.get(key)
        if rule is None:
            new_key, new_value = key, value
        else:
            new_key, new_value = _apply_rule(key, value, table.resolve(rule), table)

        # First writer wins when a rename collides with an existing field
        if new_key in result:
            logger.debug("Field %r already set; dropping value from %r", new_key, key)
            continue
        result[new_key] = new_value
    return result


def _apply_rule(key: str, value: Any, rule: RuleNode, table: RuleTable) -> tuple[str, Any]:
    if isinstance(rule, ReferenceRule):
        return rule.rename or key, normalize_references(value, rule.is_collection)
    if isinstance(rule, UnionRule):
        return _apply_union(key, value, rule, table)
    # PlainRule (MoveRule is already resolved)
    return rule.rename or key, _transform_value(value, rule, table)


def _transform_value(value: Any, rule: RuleNode, table: RuleTable) -> Any:
    children = rule.children if isinstance(rule, PlainRule) else {}
    if isinstance(value, dict):
        return _transform_object(value, children, table)
    if isinstance(value, list):
        return [_transform_value(item, rule, table) for item in value]
    return value


def _union_arguments(rule: UnionRule, key: str) -> tuple[str, str | None]:
    """Validate a union rule's tr/arg and return (type, key)."""
    arg = rule.arg
    if not isinstance(arg, dict):
        raise UnionArgumentError(f"union rule for {key!r} has no tr/arg object")

    type_name = arg.get("type")
    if not isinstance(type_name, str) or not type_name:
        raise UnionArgumentError(f"union rule for {key!r} needs a string 'type', got {type_name!r}")

    new_key = arg.get("key")
    if new_key is not None and (not isinstance(new_key, str) or not new_key):
        raise UnionArgumentError(f"union rule for {key!r} has invalid 'key' {new_key!r}")
    return type_name, new_key


def _apply_union(key: str, value: Any, rule: UnionRule, table: RuleTable) -> tuple[str, Any]:
    type_name, new_key = _union_arguments(rule, key)
    target_key = new_key or rule.rename or key

    type_rule = table.node_for(type_name)
    if type_rule is None:
        return target_key, {type_name: value}

    if type_name == REFERENCE_TYPE:
        return target_key, normalize_references(value, is_collection=False)
    return target_key, _transform_value(value, table.resolve(type_rule), table)


default_engine = TransformEngine()


def transform(resource: dict[str, Any], version: str) -> dict[str, Any]:
    """Transform a resource with the process-wide engine."""
    return default_engine.transform(resource, version)
