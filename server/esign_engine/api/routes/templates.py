from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.api.dependencies.auth import get_current_actor
from esign_engine.api.dependencies.database import commit, get_db
from esign_engine.models.template import TemplateCategory, TemplateStatus
from esign_engine.schemas.common import Actor
from esign_engine.schemas.template import (
    TemplateApproval,
    TemplateAuditEvent,
    TemplateCloneRequest,
    TemplateCollection,
    TemplateCreate,
    TemplateExport,
    TemplateImport,
    TemplateRead,
    TemplateStatistics,
    TemplateSummary,
    TemplateUpdate,
    TemplateValidationReport,
)
from esign_engine.services import template_service
from esign_engine.services.template_service import TemplateFilters

router = APIRouter(prefix="/templates", tags=["templates"])

Page = Annotated[int, Query(ge=1)]
PageSize = Annotated[int, Query(ge=1, le=100)]


@router.get("", response_model=TemplateCollection)
async def list_templates_endpoint(
    page: Page = 1,
    page_size: PageSize = 20,
    search: str | None = Query(default=None, min_length=2),
    template_status: TemplateStatus | None = Query(default=None, alias="status"),
    category: TemplateCategory | None = None,
    is_active: bool | None = None,
    plan: str | None = None,
    region: str | None = None,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> TemplateCollection:
    filters = TemplateFilters(
        search=search,
        status=template_status,
        category=category,
        is_active=is_active,
        applicable_plan=plan,
        applicable_region=region,
    )
    items, total = await template_service.list_templates(session, filters=filters, page=page, page_size=page_size)
    return TemplateCollection(
        items=[TemplateSummary.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def create_template_endpoint(
    payload: TemplateCreate,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.create_template(session, payload, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/import", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def import_template_endpoint(
    payload: TemplateImport,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.import_template(session, payload, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.get("/for-plan/{plan_id}", response_model=TemplateRead)
async def template_for_plan_endpoint(
    plan_id: str,
    region: str = "US",
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> TemplateRead:
    template = await template_service.template_for_plan(session, plan_id, region)
    return TemplateRead.model_validate(template)


@router.get("/{template_id}", response_model=TemplateRead)
async def get_template_endpoint(
    template_id: str,
    include_inactive: bool = False,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> TemplateRead:
    template = await template_service.get_template(session, template_id, include_inactive=include_inactive)
    return TemplateRead.model_validate(template)


@router.patch("/{template_id}", response_model=TemplateRead)
async def update_template_endpoint(
    template_id: str,
    payload: TemplateUpdate,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.update_template(session, template_id, payload, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/{template_id}/versions", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def create_version_endpoint(
    template_id: str,
    payload: TemplateUpdate,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.create_new_version(session, template_id, payload, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/{template_id}/submit", response_model=TemplateRead)
async def submit_template_endpoint(
    template_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.submit_for_review(session, template_id, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/{template_id}/approve", response_model=TemplateRead)
async def approve_template_endpoint(
    template_id: str,
    payload: TemplateApproval | None = None,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    notes = payload.notes if payload else None
    template = await template_service.approve_template(session, template_id, actor, notes)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/{template_id}/publish", response_model=TemplateRead)
async def publish_template_endpoint(
    template_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.publish_template(session, template_id, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/{template_id}/deactivate", response_model=TemplateRead)
async def deactivate_template_endpoint(
    template_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.deactivate_template(session, template_id, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/{template_id}/restore", response_model=TemplateRead)
async def restore_template_endpoint(
    template_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.restore_template(session, template_id, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.post("/{template_id}/clone", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
async def clone_template_endpoint(
    template_id: str,
    payload: TemplateCloneRequest,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateRead:
    template = await template_service.clone_template(session, template_id, payload.name, actor)
    await commit(session)
    return TemplateRead.model_validate(template)


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template_endpoint(
    template_id: str,
    permanent: bool = False,
    reason: str | None = Query(default=None, max_length=500),
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> Response:
    await template_service.delete_template(session, template_id, actor, permanent=permanent, reason=reason)
    await commit(session)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{template_id}/validation", response_model=TemplateValidationReport)
async def validate_template_endpoint(
    template_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> TemplateValidationReport:
    return await template_service.validate_template(session, template_id)


@router.get("/{template_id}/statistics", response_model=TemplateStatistics)
async def template_statistics_endpoint(
    template_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> TemplateStatistics:
    return await template_service.template_statistics(session, template_id)


@router.get("/{template_id}/audit", response_model=list[TemplateAuditEvent])
async def template_audit_endpoint(
    template_id: str,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),  # noqa: ARG001
) -> list[TemplateAuditEvent]:
    return await template_service.template_audit_history(session, template_id)


@router.get("/{template_id}/export", response_model=TemplateExport)
async def export_template_endpoint(
    template_id: str,
    include_statistics: bool = False,
    session: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> TemplateExport:
    return await template_service.export_template(
        session, template_id, actor, include_statistics=include_statistics
    )
