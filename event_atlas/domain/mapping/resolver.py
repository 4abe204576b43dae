"""
Field mapping resolution.

A field mapping arrives as a small directed graph::

    {
        "nodes": [
            {"id": "c1", "kind": "source", "column": "Event Name"},
            {"id": "t1", "kind": "transform", "transform": {"type": "string-op", "operation": "trim"}},
            {"id": "f1", "kind": "target", "field": "title"}
        ],
        "edges": [{"from": "c1", "to": "t1"}, {"from": "t1", "to": "f1"}]
    }

``resolve_mapping`` turns it into an ordered list of
``(source_column, transforms, target_field)`` entries plus non-fatal type
warnings, or raises ``MappingValidationError`` listing every problem. It has
no side effects. ``apply_mapping`` runs a resolved mapping against one row.
"""
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from event_atlas.core.errors import MappingValidationError
from event_atlas.domain.mapping.schema import (
    EVENT_TARGET_FIELDS,
    InferredType,
    TargetField,
    is_compatible,
)
from event_atlas.domain.mapping.transforms import apply_transform, output_type, validate_transform
from event_atlas.domain.mapping.types import coerce_value, is_empty

logger = logging.getLogger(__name__)

NODE_KINDS = {"source", "transform", "target"}


@dataclass
class MappingEntry:
    source_column: str
    target_field: str
    transforms: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ResolvedMapping:
    entries: List[MappingEntry]
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    def fields(self) -> List[str]:
        return [entry.target_field for entry in self.entries]

    def has_field(self, name: str) -> bool:
        return any(entry.target_field == name for entry in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {"entries": [asdict(entry) for entry in self.entries], "warnings": list(self.warnings)}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ResolvedMapping":
        return cls(
            entries=[MappingEntry(**entry) for entry in payload.get("entries", [])],
            warnings=list(payload.get("warnings", [])),
        )


def _issue(code: str, message: str, **details: Any) -> Dict[str, Any]:
    payload = {"code": code, "message": message}
    payload.update({key: value for key, value in details.items() if value is not None})
    return payload


def _index_nodes(graph: Dict[str, Any], fields_by_name: Dict[str, TargetField], issues: List[Dict[str, Any]]):
    nodes: Dict[str, Dict[str, Any]] = {}
    for node in graph.get("nodes") or []:
        node_id = node.get("id") if isinstance(node, dict) else None
        if not node_id:
            issues.append(_issue("invalid_node", "Every node needs an 'id'"))
            continue
        if node_id in nodes:
            issues.append(_issue("duplicate_node", f"Node id '{node_id}' is used more than once", node=node_id))
            continue
        kind = node.get("kind")
        if kind not in NODE_KINDS:
            issues.append(_issue("invalid_node", f"Node '{node_id}' has unknown kind '{kind}'", node=node_id))
            continue
        if kind == "source" and not node.get("column"):
            issues.append(_issue("invalid_node", f"Source node '{node_id}' has no column", node=node_id))
            continue
        if kind == "target" and node.get("field") not in fields_by_name:
            issues.append(
                _issue("unknown_target", f"Target field '{node.get('field')}' does not exist", node=node_id)
            )
            continue
        if kind == "transform":
            for problem in validate_transform(node.get("transform")):
                issues.append(_issue("invalid_transform", f"Transform '{node_id}': {problem}", node=node_id))
        nodes[node_id] = node
    return nodes


def _trace_to_source(
    start_id: str,
    nodes: Dict[str, Dict[str, Any]],
    inbound: Dict[str, List[str]],
) -> Tuple[Optional[str], List[Dict[str, Any]], Optional[str]]:
    """
    Walk inbound edges from ``start_id`` back to a source column.

    Returns ``(column, transforms_in_source_order, problem)``.
    """
    transforms: List[Dict[str, Any]] = []
    visited = set()
    current = start_id
    while True:
        if current in visited:
            return None, [], "cycle"
        visited.add(current)
        node = nodes[current]
        if node["kind"] == "source":
            transforms.reverse()
            return node["column"], transforms, None
        if node["kind"] == "target":
            return None, [], "target_as_input"
        transforms.append(node["transform"])
        parents = inbound.get(current, [])
        if len(parents) != 1:
            return None, [], "dangling_transform"
        current = parents[0]


def _find_cycle(node_ids: List[str], outbound: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return the node ids of one cycle in the graph, or None when it is acyclic."""
    state: Dict[str, int] = {}  # 1 = on the current path, 2 = done
    for root in node_ids:
        if state.get(root):
            continue
        path: List[str] = [root]
        stack = [iter(outbound.get(root, []))]
        state[root] = 1
        while stack:
            child = next(stack[-1], None)
            if child is None:
                state[path.pop()] = 2
                stack.pop()
                continue
            if state.get(child) == 1:
                return path[path.index(child):]
            if not state.get(child):
                state[child] = 1
                path.append(child)
                stack.append(iter(outbound.get(child, [])))
    return None


def resolve_mapping(
    graph: Dict[str, Any],
    target_fields: Optional[List[TargetField]] = None,
    column_types: Optional[Dict[str, Any]] = None,
) -> ResolvedMapping:
    """
    Validate a mapping graph and return its ordered entries.

    Rules are applied in order: duplicate bindings into a target field, then
    one resolved path for every required field, then type warnings. All
    hard errors found are raised together.
    """
    target_fields = target_fields or EVENT_TARGET_FIELDS
    fields_by_name = {target.name: target for target in target_fields}
    issues: List[Dict[str, Any]] = []

    if not isinstance(graph, dict):
        raise MappingValidationError([_issue("invalid_graph", "Mapping graph must be an object")])

    nodes = _index_nodes(graph, fields_by_name, issues)

    inbound: Dict[str, List[str]] = defaultdict(list)
    outbound: Dict[str, List[str]] = defaultdict(list)
    for edge in graph.get("edges") or []:
        source_id = edge.get("from") if isinstance(edge, dict) else None
        target_id = edge.get("to") if isinstance(edge, dict) else None
        if source_id not in nodes or target_id not in nodes:
            issues.append(
                _issue("unknown_node", f"Edge {source_id!r} -> {target_id!r} references an unknown node")
            )
            continue
        if nodes[target_id]["kind"] == "source":
            issues.append(_issue("invalid_edge", f"Source node '{target_id}' cannot have inbound edges"))
            continue
        inbound[target_id].append(source_id)
        outbound[source_id].append(target_id)

    cycle = _find_cycle(list(nodes), outbound)
    if cycle is not None:
        issues.append(_issue(
            "cycle",
            "Mapping graph contains a cycle: " + " -> ".join(cycle + cycle[:1]),
            nodes=cycle,
        ))

    # (a) duplicate bindings, counted per field across all target nodes
    bindings: Dict[str, List[str]] = defaultdict(list)
    for node_id, node in nodes.items():
        if node["kind"] == "target":
            bindings[node["field"]].extend(inbound.get(node_id, []))

    for field_name, parents in bindings.items():
        if len(parents) > 1:
            issues.append(_issue(
                "duplicate_binding",
                f"Target field '{field_name}' has {len(parents)} inbound edges",
                field=field_name,
            ))

    for node_id, node in nodes.items():
        if node["kind"] == "transform" and len(inbound.get(node_id, [])) > 1:
            issues.append(_issue(
                "invalid_transform",
                f"Transform '{node_id}' has more than one input",
                node=node_id,
            ))

    # (b) one resolved path for each bound field, required fields must be bound
    resolved: Dict[str, MappingEntry] = {}
    for field_name, parents in bindings.items():
        if len(parents) != 1:
            continue
        column, transforms, problem = _trace_to_source(parents[0], nodes, inbound)
        if problem == "cycle":
            if cycle is None:
                issues.append(_issue("cycle", f"Path into '{field_name}' contains a cycle", field=field_name))
        elif problem is not None:
            issues.append(_issue(
                "unresolved_path",
                f"Path into '{field_name}' does not lead back to a source column",
                field=field_name,
            ))
        elif column_types is not None and column not in column_types:
            issues.append(_issue(
                "unknown_column",
                f"Source column '{column}' is not present in the file",
                field=field_name,
                column=column,
            ))
        else:
            resolved[field_name] = MappingEntry(column, field_name, transforms)

    for target in target_fields:
        if target.required and not bindings.get(target.name):
            issues.append(_issue(
                "missing_required",
                f"Required field '{target.name}' is not mapped",
                field=target.name,
            ))

    if issues:
        logger.info("Rejected field mapping with %d issue(s)", len(issues))
        raise MappingValidationError(issues)

    # (c) type warnings
    warnings: List[Dict[str, Any]] = []
    entries: List[MappingEntry] = []
    for target in target_fields:
        entry = resolved.get(target.name)
        if entry is None:
            continue
        entries.append(entry)
        effective = _effective_type(entry, column_types)
        if effective is not None and not is_compatible(effective, target.type):
            warnings.append({
                "code": "type_mismatch",
                "field": target.name,
                "column": entry.source_column,
                "source_type": effective.value,
                "target_type": target.type.value,
                "message": (
                    f"Column '{entry.source_column}' looks like {effective.value} "
                    f"but '{target.name}' expects {target.type.value}; values will be coerced per row"
                ),
            })

    return ResolvedMapping(entries=entries, warnings=warnings)


def _effective_type(entry: MappingEntry, column_types: Optional[Dict[str, Any]]) -> Optional[InferredType]:
    for spec in reversed(entry.transforms):
        produced = output_type(spec)
        if produced is not None:
            return produced
    if not column_types or entry.source_column not in column_types:
        return None
    return InferredType(column_types[entry.source_column])


def _build_row_error(
    *,
    error_type: str,
    message: str,
    field_name: str,
    column: Optional[str] = None,
    value: Any = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"type": error_type, "message": message, "field": field_name}
    if column is not None:
        payload["column"] = column
    if value is not None:
        payload["value"] = value if isinstance(value, (int, float, str, bool)) else str(value)
    return payload


def apply_mapping(
    row: Dict[str, Any],
    resolved: ResolvedMapping,
    target_fields: Optional[List[TargetField]] = None,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """
    Map one source row onto the target schema.

    Returns ``(values, errors)``. Fields whose value cannot be coerced are
    left as None and reported; required fields that end up empty are
    reported too.
    """
    fields_by_name = {target.name: target for target in (target_fields or EVENT_TARGET_FIELDS)}
    values: Dict[str, Any] = {}
    errors: List[Dict[str, Any]] = []

    for entry in resolved.entries:
        target = fields_by_name[entry.target_field]
        raw = row.get(entry.source_column)
        value = raw
        try:
            for spec in entry.transforms:
                value = apply_transform(value, spec)
            value = coerce_value(value, target.type)
        except ValueError as exc:
            errors.append(_build_row_error(
                error_type="coercion_failed",
                message=f"{target.name}: {exc}",
                field_name=target.name,
                column=entry.source_column,
                value=raw,
            ))
            value = None
        values[target.name] = value

    for target in fields_by_name.values():
        if target.required and is_empty(values.get(target.name)):
            already_reported = any(error["field"] == target.name for error in errors)
            if not already_reported:
                errors.append(_build_row_error(
                    error_type="missing_required",
                    message=f"{target.name} is required",
                    field_name=target.name,
                ))

    return values, errors
