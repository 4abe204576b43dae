"""
Endpoints for storing and checking field-mapping graphs.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from event_atlas.api.dependencies import ensure_owner
from event_atlas.api.schemas.imports import (
    FieldMappingCreateRequest,
    FieldMappingResponse,
    FieldMappingValidateRequest,
    FieldMappingValidationResponse,
)
from event_atlas.core.errors import MappingValidationError
from event_atlas.core.security import User, get_current_user
from event_atlas.domain.imports.jobs import get_import_file
from event_atlas.domain.mapping.resolver import resolve_mapping
from event_atlas.domain.mapping.store import create_field_mapping, get_field_mapping

router = APIRouter(tags=["field-mappings"])


def _column_types(import_file_id: Optional[str], explicit: Optional[Dict[str, str]], user: User) -> Optional[Dict[str, Any]]:
    if explicit is not None:
        return explicit
    if import_file_id:
        import_file = ensure_owner(get_import_file(import_file_id), user, "Import file")
        return import_file.get("column_types")
    return None


@router.post("/field-mappings", response_model=FieldMappingResponse)
async def create_field_mapping_endpoint(request: FieldMappingCreateRequest, current_user: User = Depends(get_current_user)):
    """Store a mapping graph; rejected with 422 and the full issue list when it does not resolve."""
    column_types = _column_types(request.import_file_id, None, current_user)
    try:
        resolved = resolve_mapping(request.graph, column_types=column_types)
    except MappingValidationError as exc:
        raise HTTPException(status_code=422, detail={"message": exc.message, "issues": exc.issues})

    try:
        mapping = create_field_mapping(
            request.graph,
            user_id=current_user.id,
            name=request.name,
            id_strategy=request.id_strategy,
            deduplication=request.deduplication,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return FieldMappingResponse(success=True, mapping=mapping, warnings=resolved.warnings)


@router.get("/field-mappings/{mapping_id}", response_model=FieldMappingResponse)
async def get_field_mapping_endpoint(mapping_id: str, current_user: User = Depends(get_current_user)):
    mapping = ensure_owner(get_field_mapping(mapping_id), current_user, "Field mapping")
    return FieldMappingResponse(success=True, mapping=mapping)


@router.post("/field-mappings/validate", response_model=FieldMappingValidationResponse)
async def validate_field_mapping_endpoint(request: FieldMappingValidateRequest, current_user: User = Depends(get_current_user)):
    """Dry-run resolution for the editor: always 200, ``valid`` tells the outcome."""
    column_types = _column_types(request.import_file_id, request.column_types, current_user)
    try:
        resolved = resolve_mapping(request.graph, column_types=column_types)
    except MappingValidationError as exc:
        return FieldMappingValidationResponse(success=True, valid=False, issues=exc.issues)
    payload = resolved.to_dict()
    return FieldMappingValidationResponse(success=True, valid=True, entries=payload["entries"], warnings=payload["warnings"])
