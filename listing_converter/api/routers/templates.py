"""
Endpoints for named column-mapping templates.
"""
from fastapi import APIRouter

from listing_converter.api.dependencies import http_error_from
from listing_converter.api.schemas.shared import (
    DeleteTemplateResponse,
    SaveTemplateRequest,
    TemplateListResponse,
    TemplateResponse,
)
from listing_converter.domain.imports.errors import ImportPipelineError
from listing_converter.domain.imports.templates import MappingTemplateStore

router = APIRouter(tags=["mapping-templates"])


@router.get("/mapping-templates", response_model=TemplateListResponse)
async def list_templates_endpoint():
    templates = MappingTemplateStore().list()
    return TemplateListResponse(templates=templates, total_count=len(templates))


@router.post("/mapping-templates", response_model=TemplateResponse)
async def save_template_endpoint(request: SaveTemplateRequest):
    try:
        template = MappingTemplateStore().save(request.name, request.mapping)
    except ImportPipelineError as e:
        raise http_error_from(e)
    return TemplateResponse(template=template)


@router.get("/mapping-templates/{template_id}", response_model=TemplateResponse)
async def get_template_endpoint(template_id: str):
    try:
        template = MappingTemplateStore().load(template_id)
    except ImportPipelineError as e:
        raise http_error_from(e)
    return TemplateResponse(template=template)


@router.delete("/mapping-templates/{template_id}", response_model=DeleteTemplateResponse)
async def delete_template_endpoint(template_id: str):
    try:
        deleted = MappingTemplateStore().delete(template_id)
    except ImportPipelineError as e:
        raise http_error_from(e)
    return DeleteTemplateResponse(template_id=template_id, deleted=deleted)
