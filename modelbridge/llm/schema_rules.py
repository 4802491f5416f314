"""
Declarative per-backend normalization of tool parameter schemas.

A :class:`SchemaRuleset` is an ordered list of ``(predicate, transform)``
rules.  Each rule looks at the *shape* of a JSON-Schema document, never at the
tool's name, and rewrites it into something the backend accepts.  Rulesets
are evaluated by the request translators; the schema cache only memoizes
their output.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Callable, Iterable

Predicate = Callable[[dict], bool]
Transform = Callable[[dict], dict]


@dataclass(frozen=True)
class SchemaRule:
    name: str
    applies: Predicate
    transform: Transform
    recursive: bool = False


class SchemaRuleset:
    """An ordered, immutable collection of :class:`SchemaRule`."""

    def __init__(self, rules: Iterable[SchemaRule] = ()) -> None:
        self._rules: tuple[SchemaRule, ...] = tuple(rules)

    @property
    def rules(self) -> tuple[SchemaRule, ...]:
        return self._rules

    def extend(self, *rules: SchemaRule) -> SchemaRuleset:
        """Return a new ruleset with *rules* appended."""
        return SchemaRuleset(self._rules + rules)

    def apply(self, schema: dict | None) -> dict:
        """Apply every matching rule to a deep copy of *schema*."""
        doc = copy.deepcopy(schema) if schema else {}
        for rule in self._rules:
            if rule.recursive:
                doc = _apply_recursive(doc, rule)
            elif rule.applies(doc):
                doc = rule.transform(doc)
        return doc


def _apply_recursive(node: dict, rule: SchemaRule) -> dict:
    if rule.applies(node):
        node = rule.transform(node)
    props = node.get("properties")
    if isinstance(props, dict):
        node["properties"] = {
            k: _apply_recursive(v, rule) if isinstance(v, dict) else v
            for k, v in props.items()
        }
    items = node.get("items")
    if isinstance(items, dict):
        node["items"] = _apply_recursive(items, rule)
    for key in ("anyOf", "oneOf", "allOf"):
        variants = node.get(key)
        if isinstance(variants, list):
            node[key] = [
                _apply_recursive(v, rule) if isinstance(v, dict) else v for v in variants
            ]
    return node


# ---------------------------------------------------------------------------
# Rule building blocks
# ---------------------------------------------------------------------------


def _set(key: str, value) -> Transform:
    def transform(doc: dict) -> dict:
        doc[key] = copy.deepcopy(value)
        return doc

    return transform


def _coerce_required(doc: dict) -> dict:
    req = doc.get("required")
    if isinstance(req, str):
        doc["required"] = [req]
    elif isinstance(req, (tuple, set)):
        doc["required"] = list(req)
    else:
        doc["required"] = []
    return doc


def _prune_required(doc: dict) -> dict:
    props = doc.get("properties") or {}
    doc["required"] = [name for name in doc["required"] if name in props]
    return doc


def _drop_keys(*keys: str) -> Transform:
    def transform(doc: dict) -> dict:
        for key in keys:
            doc.pop(key, None)
        return doc

    return transform


def _has_any(*keys: str) -> Predicate:
    return lambda doc: any(k in doc for k in keys)


FORCE_OBJECT_TYPE = SchemaRule(
    "force-object-type",
    applies=lambda doc: doc.get("type") != "object",
    transform=_set("type", "object"),
)

DEFAULT_PROPERTIES = SchemaRule(
    "default-properties",
    applies=lambda doc: not isinstance(doc.get("properties"), dict),
    transform=_set("properties", {}),
)

REQUIRED_AS_LIST = SchemaRule(
    "required-as-list",
    applies=lambda doc: not isinstance(doc.get("required"), list),
    transform=_coerce_required,
)

REQUIRED_KNOWN_PROPERTIES = SchemaRule(
    "required-known-properties",
    applies=lambda doc: any(n not in (doc.get("properties") or {}) for n in doc.get("required", [])),
    transform=_prune_required,
)

DROP_META_KEYWORDS = SchemaRule(
    "drop-meta-keywords",
    applies=_has_any("$schema", "$id"),
    transform=_drop_keys("$schema", "$id"),
)

CLOSED_OBJECT = SchemaRule(
    "closed-object",
    applies=lambda doc: "additionalProperties" not in doc,
    transform=_set("additionalProperties", False),
)

# Gemini's function declarations accept an OpenAPI subset and reject these
# keywords at any depth.
OPENAPI_SUBSET = SchemaRule(
    "openapi-subset",
    applies=_has_any("additionalProperties", "$schema", "$id", "$ref", "default", "examples"),
    transform=_drop_keys("additionalProperties", "$schema", "$id", "$ref", "default", "examples"),
    recursive=True,
)


_BASE = (
    DROP_META_KEYWORDS,
    FORCE_OBJECT_TYPE,
    DEFAULT_PROPERTIES,
    REQUIRED_AS_LIST,
    REQUIRED_KNOWN_PROPERTIES,
)

ANTHROPIC_RULES = SchemaRuleset(_BASE)
OPENAI_RULES = SchemaRuleset(_BASE + (CLOSED_OBJECT,))
GEMINI_RULES = SchemaRuleset(_BASE + (OPENAPI_SUBSET,))
OLLAMA_RULES = SchemaRuleset(_BASE)
