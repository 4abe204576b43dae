"""
Tests for field-mapping graph resolution and row application.
"""
import pytest

from event_atlas.core.errors import MappingValidationError
from event_atlas.domain.mapping.resolver import ResolvedMapping, apply_mapping, resolve_mapping
from event_atlas.domain.mapping.suggest import suggest_mapping


def _graph(*bindings, transforms=None):
    """Build a graph from ``(column, field)`` pairs; ``transforms`` maps field -> transform specs."""
    transforms = transforms or {}
    nodes, edges = [], []
    for index, (column, field_name) in enumerate(bindings):
        source_id = f"s{index}"
        target_id = f"t{index}"
        nodes.append({"id": source_id, "kind": "source", "column": column})
        nodes.append({"id": target_id, "kind": "target", "field": field_name})
        previous = source_id
        for step, spec in enumerate(transforms.get(field_name, [])):
            transform_id = f"x{index}-{step}"
            nodes.append({"id": transform_id, "kind": "transform", "transform": spec})
            edges.append({"from": previous, "to": transform_id})
            previous = transform_id
        edges.append({"from": previous, "to": target_id})
    return {"nodes": nodes, "edges": edges}


def _codes(exc_info):
    return {issue["code"] for issue in exc_info.value.issues}


def test_resolve_simple_mapping_in_target_field_order():
    graph = _graph(("When", "timestamp"), ("Name", "title"), ("Where", "address"))

    resolved = resolve_mapping(graph)

    assert resolved.fields() == ["title", "timestamp", "address"]
    assert resolved.entries[0].source_column == "Name"
    assert resolved.warnings == []


def test_duplicate_binding_is_rejected():
    graph = _graph(("Name", "title"), ("Other", "title"), ("When", "timestamp"))

    with pytest.raises(MappingValidationError) as exc_info:
        resolve_mapping(graph)

    assert "duplicate_binding" in _codes(exc_info)
    duplicate = next(issue for issue in exc_info.value.issues if issue["code"] == "duplicate_binding")
    assert duplicate["field"] == "title"


def test_missing_required_fields_are_all_reported():
    graph = _graph(("Where", "address"))

    with pytest.raises(MappingValidationError) as exc_info:
        resolve_mapping(graph)

    missing = {issue["field"] for issue in exc_info.value.issues if issue["code"] == "missing_required"}
    assert missing == {"title", "timestamp"}


def test_cycle_between_transforms_is_rejected():
    graph = {
        "nodes": [
            {"id": "a", "kind": "transform", "transform": {"type": "string-op", "operation": "trim"}},
            {"id": "b", "kind": "transform", "transform": {"type": "string-op", "operation": "trim"}},
            {"id": "title", "kind": "target", "field": "title"},
            {"id": "src", "kind": "source", "column": "When"},
            {"id": "ts", "kind": "target", "field": "timestamp"},
        ],
        "edges": [
            {"from": "a", "to": "b"},
            {"from": "b", "to": "a"},
            {"from": "b", "to": "title"},
            {"from": "src", "to": "ts"},
        ],
    }

    with pytest.raises(MappingValidationError) as exc_info:
        resolve_mapping(graph)

    assert "cycle" in _codes(exc_info)


def test_cycle_unreachable_from_any_target_is_rejected():
    graph = _graph(("Name", "title"), ("When", "timestamp"))
    graph["nodes"] += [
        {"id": "loop-1", "kind": "transform", "transform": {"type": "string-op", "operation": "trim"}},
        {"id": "loop-2", "kind": "transform", "transform": {"type": "string-op", "operation": "lowercase"}},
    ]
    graph["edges"] += [{"from": "loop-1", "to": "loop-2"}, {"from": "loop-2", "to": "loop-1"}]

    with pytest.raises(MappingValidationError) as exc_info:
        resolve_mapping(graph)

    cycles = [issue for issue in exc_info.value.issues if issue["code"] == "cycle"]
    assert len(cycles) == 1
    assert set(cycles[0]["nodes"]) == {"loop-1", "loop-2"}


def test_unknown_target_field_and_unknown_column():
    graph = _graph(("Name", "title"), ("When", "timestamp"), ("Venue", "venue"))

    with pytest.raises(MappingValidationError) as exc_info:
        resolve_mapping(graph, column_types={"Name": "string", "When": "date"})

    assert "unknown_target" in _codes(exc_info)

    graph = _graph(("Name", "title"), ("Missing", "timestamp"))
    with pytest.raises(MappingValidationError) as exc_info:
        resolve_mapping(graph, column_types={"Name": "string"})

    assert "unknown_column" in _codes(exc_info)


def test_invalid_transform_is_reported():
    graph = _graph(
        ("Name", "title"),
        ("When", "timestamp"),
        transforms={"title": [{"type": "string-op", "operation": "reverse"}]},
    )

    with pytest.raises(MappingValidationError) as exc_info:
        resolve_mapping(graph)

    assert "invalid_transform" in _codes(exc_info)


def test_type_mismatch_is_a_warning_not_an_error():
    graph = _graph(("Name", "title"), ("When", "timestamp"))

    resolved = resolve_mapping(graph, column_types={"Name": "string", "When": "string"})

    assert resolved.fields() == ["title", "timestamp"]
    assert len(resolved.warnings) == 1
    warning = resolved.warnings[0]
    assert warning["code"] == "type_mismatch"
    assert warning["field"] == "timestamp"
    assert warning["source_type"] == "string"


def test_date_parse_transform_silences_type_warning():
    graph = _graph(
        ("Name", "title"),
        ("When", "timestamp"),
        transforms={"timestamp": [{"type": "date-parse", "input_format": "%d.%m.%Y"}]},
    )

    resolved = resolve_mapping(graph, column_types={"Name": "string", "When": "string"})

    assert resolved.warnings == []
    assert resolved.entries[1].transforms == [{"type": "date-parse", "input_format": "%d.%m.%Y"}]


def test_resolution_is_deterministic_and_round_trips():
    graph = _graph(("Name", "title"), ("When", "timestamp"), ("Lat", "latitude"))

    first = resolve_mapping(graph, column_types={"Name": "string", "When": "date", "Lat": "number"})
    second = resolve_mapping(graph, column_types={"Name": "string", "When": "date", "Lat": "number"})

    assert first.to_dict() == second.to_dict()
    assert ResolvedMapping.from_dict(first.to_dict()).fields() == first.fields()


def test_apply_mapping_runs_transforms_then_coerces():
    graph = _graph(
        ("Name", "title"),
        ("When", "timestamp"),
        transforms={
            "title": [{"type": "string-op", "operation": "uppercase"}],
            "timestamp": [{"type": "date-parse", "input_format": "%d.%m.%Y"}],
        },
    )
    resolved = resolve_mapping(graph)

    values, errors = apply_mapping({"Name": " Jazz night ", "When": "24.12.2026"}, resolved)

    assert errors == []
    assert values["title"] == "JAZZ NIGHT"
    assert values["timestamp"].year == 2026
    assert values["timestamp"].month == 12
    assert values["timestamp"].day == 24


def test_apply_mapping_reports_coercion_and_missing_required():
    resolved = resolve_mapping(_graph(("Name", "title"), ("When", "timestamp")))

    values, errors = apply_mapping({"Name": None, "When": "someday"}, resolved)

    assert values["title"] is None
    assert values["timestamp"] is None
    by_field = {error["field"]: error["type"] for error in errors}
    assert by_field == {"timestamp": "coercion_failed", "title": "missing_required"}


def test_suggested_mapping_resolves():
    columns = ["Event Name", "Start Date", "Location", "Lat", "Lng", "Notes"]

    graph = suggest_mapping(columns, {"Event Name": "string", "Start Date": "date"})
    resolved = resolve_mapping(graph)

    by_field = {entry.target_field: entry.source_column for entry in resolved.entries}
    assert by_field == {
        "title": "Event Name",
        "timestamp": "Start Date",
        "description": "Notes",
        "latitude": "Lat",
        "longitude": "Lng",
        "address": "Location",
    }


def test_suggested_mapping_falls_back_to_column_types():
    graph = suggest_mapping(["Headline", "Wann"], {"Headline": "string", "Wann": "date"})

    resolved = resolve_mapping(graph)

    by_field = {entry.target_field: entry.source_column for entry in resolved.entries}
    assert by_field == {"title": "Headline", "timestamp": "Wann"}
