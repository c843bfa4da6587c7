from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Iterable, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.core import clock
from esign_engine.core.errors import (
    FieldViolation,
    NotFound,
    PreconditionFailed,
    TemplateInUse,
    ValidationError,
)
from esign_engine.core.logging import get_logger
from esign_engine.models.contract import ContractStatus, SignedContract
from esign_engine.models.template import ContractTemplate, TemplateCategory, TemplateStatus
from esign_engine.schemas.common import Actor
from esign_engine.schemas.template import (
    ExportMetadata,
    LegalInfo,
    SigningRequirements,
    TemplateAuditEvent,
    TemplateCreate,
    TemplateExport,
    TemplateImport,
    TemplateStatistics,
    TemplateUpdate,
    TemplateValidationReport,
    TemplateVariable,
)
from esign_engine.services.template_rendering import find_placeholders

logger = get_logger(__name__)

INITIAL_VERSION = "1.0.0"
PROTECTED_FIELDS = ("id", "family_id", "version", "previous_version_id", "created_by", "created_by_name", "created_at")

TEMPLATE_TRANSITIONS: dict[TemplateStatus, tuple[TemplateStatus, ...]] = {
    TemplateStatus.DRAFT: (TemplateStatus.REVIEW, TemplateStatus.APPROVED, TemplateStatus.ARCHIVED),
    TemplateStatus.REVIEW: (TemplateStatus.DRAFT, TemplateStatus.APPROVED, TemplateStatus.ARCHIVED),
    TemplateStatus.APPROVED: (TemplateStatus.ACTIVE, TemplateStatus.ARCHIVED),
    TemplateStatus.ACTIVE: (TemplateStatus.DEPRECATED, TemplateStatus.ARCHIVED),
    TemplateStatus.DEPRECATED: (TemplateStatus.ARCHIVED,),
    TemplateStatus.ARCHIVED: (),
}


@dataclass(slots=True)
class TemplateFilters:
    search: str | None = None
    status: TemplateStatus | None = None
    category: TemplateCategory | None = None
    is_active: bool | None = None
    applicable_plan: str | None = None
    applicable_region: str | None = None


def _new_template_id() -> str:
    return f"tpl_{secrets.token_hex(6)}"


def _version_id(family_id: str, version: str) -> str:
    return f"{family_id}_v{version.replace('.', '_')}"


def _bump_minor(version: str) -> str:
    parts = [int(part) for part in version.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return f"{parts[0]}.{parts[1] + 1}.0"


def variables_of(template: ContractTemplate) -> list[TemplateVariable]:
    return [TemplateVariable.model_validate(item) for item in template.variables or []]


def requirements_of(template: ContractTemplate) -> SigningRequirements:
    return SigningRequirements.model_validate(template.signing_requirements or {})


def legal_of(template: ContractTemplate) -> LegalInfo:
    return LegalInfo.model_validate(template.legal or {})


def _transition(template: ContractTemplate, target: TemplateStatus) -> None:
    if template.status == target:
        return
    if target not in TEMPLATE_TRANSITIONS.get(template.status, ()):
        raise PreconditionFailed(
            f"Template status transition {template.status.value} -> {target.value} not permitted",
            {"template_id": template.id, "from": template.status.value, "to": target.value},
        )
    template.status = target


def _stamp_modified(template: ContractTemplate, actor: Actor) -> None:
    template.last_modified_by = actor.id
    template.last_modified_by_name = actor.name
    template.last_modified_at = clock.utcnow()


def _record_lifecycle(template: ContractTemplate, action: str, actor: Actor, reason: str | None = None) -> None:
    entry = {
        "action": action,
        "actor_id": actor.id,
        "actor_name": actor.name,
        "timestamp": clock.utcnow().isoformat(),
    }
    if reason is not None:
        entry["reason"] = reason
    # Reassigned so the JSON column is seen as changed.
    template.lifecycle_history = [*(template.lifecycle_history or []), entry]


async def _find_template(session: AsyncSession, template_id: str) -> ContractTemplate | None:
    return await session.get(ContractTemplate, template_id)


async def get_template(session: AsyncSession, template_id: str, *, include_inactive: bool = False) -> ContractTemplate:
    template = await _find_template(session, template_id)
    if template is None or (not include_inactive and not template.is_active):
        raise NotFound("template", template_id)
    return template


async def count_contract_references(session: AsyncSession, template_id: str) -> int:
    total = await session.scalar(
        select(func.count()).select_from(SignedContract).where(SignedContract.template_id == template_id)
    )
    return int(total or 0)


async def list_templates(
    session: AsyncSession,
    *,
    filters: TemplateFilters,
    page: int,
    page_size: int,
) -> tuple[Sequence[ContractTemplate], int]:
    conditions = []
    if filters.search:
        like_term = f"%{filters.search.lower()}%"
        conditions.append(
            or_(
                func.lower(ContractTemplate.name).like(like_term),
                func.lower(ContractTemplate.description).like(like_term),
                func.lower(ContractTemplate.content).like(like_term),
            )
        )
    if filters.status:
        conditions.append(ContractTemplate.status == filters.status)
    if filters.category:
        conditions.append(ContractTemplate.category == filters.category)
    if filters.is_active is not None:
        conditions.append(ContractTemplate.is_active.is_(filters.is_active))

    query = select(ContractTemplate)
    if conditions:
        query = query.where(and_(*conditions))
    result = await session.execute(query.order_by(ContractTemplate.updated_at.desc(), ContractTemplate.id))
    items = list(result.scalars().all())

    # Plan/region tags live in JSON lists, filtered here to stay backend-neutral.
    if filters.applicable_plan:
        items = [item for item in items if filters.applicable_plan in (item.applicable_plans or [])]
    if filters.applicable_region:
        items = [
            item
            for item in items
            if filters.applicable_region in (item.applicable_regions or []) or "ALL" in (item.applicable_regions or [])
        ]

    total = len(items)
    start = (page - 1) * page_size
    return items[start : start + page_size], total


async def create_template(session: AsyncSession, data: TemplateCreate, actor: Actor) -> ContractTemplate:
    template_id = _new_template_id()
    now = clock.utcnow()
    template = ContractTemplate(
        id=template_id,
        family_id=template_id,
        name=data.name,
        description=data.description,
        category=data.category,
        locale=data.locale,
        version=INITIAL_VERSION,
        status=TemplateStatus.DRAFT,
        is_active=True,
        content=data.content,
        content_html=data.content_html,
        variables=[variable.model_dump(mode="json") for variable in data.variables],
        applicable_plans=list(data.applicable_plans),
        applicable_regions=list(data.applicable_regions),
        signing_requirements=data.signing_requirements.model_dump(mode="json"),
        legal=data.legal.model_dump(mode="json"),
        created_by=actor.id,
        created_by_name=actor.name,
        last_modified_by=actor.id,
        last_modified_by_name=actor.name,
        last_modified_at=now,
    )
    session.add(template)
    await session.flush()
    logger.info("template.created", template_id=template.id, actor_id=actor.id)
    return template


async def update_template(
    session: AsyncSession,
    template_id: str,
    patch: TemplateUpdate,
    actor: Actor,
) -> ContractTemplate:
    template = await get_template(session, template_id, include_inactive=True)

    requested = set(patch.model_dump(exclude_unset=True)) | set(patch.model_extra or {})
    violations = [
        FieldViolation(field, "field cannot be modified; create a new version instead")
        for field in PROTECTED_FIELDS
        if field in requested
    ]
    if violations:
        raise ValidationError(violations, "Protected template fields cannot be changed")

    references = await count_contract_references(session, template.id)
    if references:
        raise PreconditionFailed(
            f"Template version {template.version} is referenced by {references} contract(s); create a new version",
            {"template_id": template.id, "references": references},
        )

    _apply_patch(template, patch)
    _stamp_modified(template, actor)
    await session.flush()
    logger.info("template.updated", template_id=template.id, fields=sorted(requested))
    return template


def _apply_patch(template: ContractTemplate, patch: TemplateUpdate) -> None:
    fields = patch.model_fields_set
    for name in ("name", "description", "category", "locale", "content", "content_html"):
        if name in fields and getattr(patch, name) is not None:
            setattr(template, name, getattr(patch, name))
    if "variables" in fields and patch.variables is not None:
        template.variables = [variable.model_dump(mode="json") for variable in patch.variables]
    if "applicable_plans" in fields and patch.applicable_plans is not None:
        template.applicable_plans = list(patch.applicable_plans)
    if "applicable_regions" in fields and patch.applicable_regions is not None:
        template.applicable_regions = list(patch.applicable_regions)
    if "signing_requirements" in fields and patch.signing_requirements is not None:
        template.signing_requirements = patch.signing_requirements.model_dump(mode="json")
    if "legal" in fields and patch.legal is not None:
        template.legal = patch.legal.model_dump(mode="json")


async def create_new_version(
    session: AsyncSession,
    template_id: str,
    patch: TemplateUpdate,
    actor: Actor,
) -> ContractTemplate:
    current = await get_template(session, template_id, include_inactive=True)
    requested = set(patch.model_dump(exclude_unset=True)) | set(patch.model_extra or {})
    violations = [
        FieldViolation(field, "field is assigned by versioning")
        for field in PROTECTED_FIELDS
        if field in requested
    ]
    if violations:
        raise ValidationError(violations, "Protected template fields cannot be changed")

    new_version = _bump_minor(current.version)
    new_id = _version_id(current.family_id, new_version)
    if await _find_template(session, new_id) is not None:
        raise PreconditionFailed(
            f"Version {new_version} already exists for this template family",
            {"template_id": new_id},
        )

    current.is_active = False
    now = clock.utcnow()
    successor = ContractTemplate(
        id=new_id,
        family_id=current.family_id,
        name=current.name,
        description=current.description,
        category=current.category,
        locale=current.locale,
        version=new_version,
        previous_version_id=current.id,
        status=TemplateStatus.DRAFT,
        is_active=True,
        content=current.content,
        content_html=current.content_html,
        variables=list(current.variables or []),
        applicable_plans=list(current.applicable_plans or []),
        applicable_regions=list(current.applicable_regions or []),
        signing_requirements=dict(current.signing_requirements or {}),
        legal=dict(current.legal or {}),
        created_by=actor.id,
        created_by_name=actor.name,
        last_modified_by=actor.id,
        last_modified_by_name=actor.name,
        last_modified_at=now,
    )
    _apply_patch(successor, patch)
    session.add(successor)
    await session.flush()
    logger.info(
        "template.version.created",
        template_id=successor.id,
        previous_version_id=current.id,
        version=new_version,
    )
    return successor


async def submit_for_review(session: AsyncSession, template_id: str, actor: Actor) -> ContractTemplate:
    template = await get_template(session, template_id, include_inactive=True)
    _transition(template, TemplateStatus.REVIEW)
    _stamp_modified(template, actor)
    await session.flush()
    return template


async def approve_template(
    session: AsyncSession,
    template_id: str,
    actor: Actor,
    notes: str | None = None,
) -> ContractTemplate:
    template = await get_template(session, template_id, include_inactive=True)
    if template.status == TemplateStatus.ARCHIVED:
        raise PreconditionFailed("Archived templates cannot be approved", {"template_id": template.id})
    if template.status in (TemplateStatus.DRAFT, TemplateStatus.REVIEW):
        _transition(template, TemplateStatus.APPROVED)
    template.approved_by = actor.id
    template.approved_by_name = actor.name
    template.approved_at = clock.utcnow()
    template.approval_notes = notes
    await session.flush()
    logger.info("template.approved", template_id=template.id, actor_id=actor.id)
    return template


async def publish_template(session: AsyncSession, template_id: str, actor: Actor) -> ContractTemplate:
    template = await get_template(session, template_id, include_inactive=True)
    if template.approved_at is None:
        raise PreconditionFailed(
            "Template must be approved before publishing",
            {"template_id": template.id},
        )
    _transition(template, TemplateStatus.ACTIVE)
    template.published_by = actor.id
    template.published_at = clock.utcnow()
    template.is_active = True
    await session.flush()
    logger.info("template.published", template_id=template.id, version=template.version)
    return template


async def deactivate_template(session: AsyncSession, template_id: str, actor: Actor) -> ContractTemplate:
    template = await get_template(session, template_id, include_inactive=True)
    template.is_active = False
    if template.status == TemplateStatus.ACTIVE:
        _transition(template, TemplateStatus.DEPRECATED)
    _stamp_modified(template, actor)
    await session.flush()
    logger.info("template.deactivated", template_id=template.id)
    return template


async def restore_template(session: AsyncSession, template_id: str, actor: Actor) -> ContractTemplate:
    template = await get_template(session, template_id, include_inactive=True)
    if template.is_active:
        raise PreconditionFailed("Template is not deleted", {"template_id": template.id})
    # Restored templates go back through review before they can be used again.
    template.status = TemplateStatus.DRAFT
    template.is_active = True
    template.approved_at = None
    template.approved_by = None
    template.approved_by_name = None
    _stamp_modified(template, actor)
    _record_lifecycle(template, "restored", actor)
    await session.flush()
    logger.info("template.restored", template_id=template.id)
    return template


async def clone_template(session: AsyncSession, template_id: str, new_name: str, actor: Actor) -> ContractTemplate:
    source = await get_template(session, template_id, include_inactive=True)
    clone_id = _new_template_id()
    clone = ContractTemplate(
        id=clone_id,
        family_id=clone_id,
        name=new_name,
        description=source.description,
        category=source.category,
        locale=source.locale,
        version=INITIAL_VERSION,
        previous_version_id=None,
        status=TemplateStatus.DRAFT,
        is_active=False,
        content=source.content,
        content_html=source.content_html,
        variables=list(source.variables or []),
        applicable_plans=list(source.applicable_plans or []),
        applicable_regions=list(source.applicable_regions or []),
        signing_requirements=dict(source.signing_requirements or {}),
        legal=dict(source.legal or {}),
        created_by=actor.id,
        created_by_name=actor.name,
    )
    session.add(clone)
    await session.flush()
    logger.info("template.cloned", template_id=clone.id, source_id=source.id)
    return clone


async def delete_template(
    session: AsyncSession,
    template_id: str,
    actor: Actor,
    *,
    permanent: bool = False,
    reason: str | None = None,
) -> ContractTemplate | None:
    """Archive a template, or remove it entirely when ``permanent`` and unreferenced.

    Returns the archived template, or ``None`` after a hard delete.
    """
    template = await get_template(session, template_id, include_inactive=True)

    if permanent:
        references = await count_contract_references(session, template.id)
        if references:
            raise TemplateInUse(
                f"Cannot permanently delete template: it is used by {references} contract(s)",
                {"template_id": template.id, "references": references},
            )
        await session.delete(template)
        await session.flush()
        logger.info("template.deleted", template_id=template_id, permanent=True)
        return None

    _transition(template, TemplateStatus.ARCHIVED)
    template.is_active = False
    _stamp_modified(template, actor)
    _record_lifecycle(template, "deleted", actor, reason or "User requested deletion")
    await session.flush()
    logger.info("template.deleted", template_id=template.id, permanent=False)
    return template


async def template_for_plan(session: AsyncSession, plan_id: str, region: str = "US") -> ContractTemplate:
    result = await session.execute(
        select(ContractTemplate)
        .where(ContractTemplate.is_active.is_(True))
        .order_by(ContractTemplate.published_at.desc().nullslast(), ContractTemplate.created_at.desc())
    )
    active = list(result.scalars().all())

    def matches_region(template: ContractTemplate) -> bool:
        regions = template.applicable_regions or []
        return region in regions or "ALL" in regions

    for template in active:
        if plan_id in (template.applicable_plans or []) and matches_region(template):
            return template
    for template in active:
        if "DEFAULT" in (template.applicable_plans or []):
            return template
    raise NotFound("template for plan", f"{plan_id}/{region}")


async def validate_template(session: AsyncSession, template_id: str) -> TemplateValidationReport:
    template = await get_template(session, template_id, include_inactive=True)
    errors: list[str] = []
    warnings: list[str] = []

    if not (template.name or "").strip():
        errors.append("Template name is required")
    if not (template.content or "").strip():
        errors.append("Template body content is required")

    declared = [variable.name for variable in variables_of(template)]
    used = find_placeholders(template.content or "")
    unused = [name for name in declared if name not in used]
    undeclared = [name for name in used if name not in declared]
    if unused:
        warnings.append(f"Unused variables: {', '.join(unused)}")
    if undeclared:
        warnings.append(f"Placeholders without a variable definition: {', '.join(undeclared)}")
    if template.content_html and "<script" in template.content_html.lower():
        errors.append("HTML content cannot contain script tags")
    if not legal_of(template).jurisdiction:
        warnings.append("Jurisdiction is not specified")

    return TemplateValidationReport(is_valid=not errors, errors=errors, warnings=warnings)


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


async def template_statistics(session: AsyncSession, template_id: str) -> TemplateStatistics:
    template = await get_template(session, template_id, include_inactive=True)

    counts = dict(
        (
            await session.execute(
                select(SignedContract.status, func.count())
                .where(SignedContract.template_id == template.id)
                .group_by(SignedContract.status)
            )
        ).all()
    )
    total_sent = sum(counts.values())
    total_signed = counts.get(ContractStatus.FULLY_SIGNED, 0) + counts.get(ContractStatus.COMPLETED, 0)
    total_declined = counts.get(ContractStatus.DECLINED, 0)
    total_expired = counts.get(ContractStatus.EXPIRED, 0)

    timings = (
        await session.execute(
            select(SignedContract.created_at, SignedContract.sent_at, SignedContract.completed_at).where(
                SignedContract.template_id == template.id,
                SignedContract.completed_at.is_not(None),
            )
        )
    ).all()
    durations = [
        (completed - (sent or created)).total_seconds() / 60 for created, sent, completed in timings if completed
    ]
    average = round(sum(durations) / len(durations), 1) if durations else 0.0
    last_used = await session.scalar(
        select(func.max(SignedContract.created_at)).where(SignedContract.template_id == template.id)
    )

    template.times_sent = total_sent
    template.times_signed = total_signed
    template.times_declined = total_declined
    template.times_expired = total_expired
    template.average_signing_minutes = average
    template.conversion_rate = _rate(total_signed, total_sent)
    template.last_used_at = last_used
    await session.flush()

    return TemplateStatistics(
        template_id=template.id,
        total_sent=total_sent,
        total_signed=total_signed,
        total_declined=total_declined,
        total_expired=total_expired,
        average_signing_minutes=average,
        conversion_rate=_rate(total_signed, total_sent),
        decline_rate=_rate(total_declined, total_sent),
        expire_rate=_rate(total_expired, total_sent),
    )


def _audit_events(template: ContractTemplate) -> Iterable[TemplateAuditEvent]:
    yield TemplateAuditEvent(
        template_id=template.id,
        version=template.version,
        action="created",
        actor_id=template.created_by,
        actor_name=template.created_by_name,
        timestamp=template.created_at,
    )
    if template.last_modified_at and template.last_modified_at != template.created_at:
        yield TemplateAuditEvent(
            template_id=template.id,
            version=template.version,
            action="modified",
            actor_id=template.last_modified_by,
            actor_name=template.last_modified_by_name,
            timestamp=template.last_modified_at,
        )
    if template.approved_at:
        yield TemplateAuditEvent(
            template_id=template.id,
            version=template.version,
            action="approved",
            actor_id=template.approved_by,
            actor_name=template.approved_by_name,
            timestamp=template.approved_at,
        )
    if template.published_at:
        yield TemplateAuditEvent(
            template_id=template.id,
            version=template.version,
            action="published",
            actor_id=template.published_by,
            timestamp=template.published_at,
        )
    for entry in template.lifecycle_history or []:
        yield TemplateAuditEvent(
            template_id=template.id,
            version=template.version,
            action=entry["action"],
            actor_id=entry.get("actor_id"),
            actor_name=entry.get("actor_name"),
            timestamp=entry["timestamp"],
            reason=entry.get("reason"),
        )


async def template_audit_history(session: AsyncSession, template_id: str) -> list[TemplateAuditEvent]:
    template = await get_template(session, template_id, include_inactive=True)
    result = await session.execute(
        select(ContractTemplate)
        .where(ContractTemplate.family_id == template.family_id)
        .order_by(ContractTemplate.created_at)
    )
    events = [event for member in result.scalars().all() for event in _audit_events(member)]
    events.sort(key=lambda event: event.timestamp)
    return events


def _stored_statistics(template: ContractTemplate) -> TemplateStatistics:
    return TemplateStatistics(
        template_id=template.id,
        total_sent=template.times_sent,
        total_signed=template.times_signed,
        total_declined=template.times_declined,
        total_expired=template.times_expired,
        average_signing_minutes=template.average_signing_minutes,
        conversion_rate=template.conversion_rate,
        decline_rate=_rate(template.times_declined, template.times_sent),
        expire_rate=_rate(template.times_expired, template.times_sent),
    )


async def export_template(
    session: AsyncSession,
    template_id: str,
    actor: Actor,
    *,
    include_statistics: bool = False,
) -> TemplateExport:
    template = await get_template(session, template_id, include_inactive=True)
    exported = TemplateExport(
        source_id=template.id,
        version=template.version,
        status=template.status,
        name=template.name,
        description=template.description,
        category=template.category,
        locale=template.locale,
        content=template.content,
        content_html=template.content_html,
        variables=variables_of(template),
        applicable_plans=list(template.applicable_plans or []),
        applicable_regions=list(template.applicable_regions or []),
        signing_requirements=requirements_of(template),
        legal=legal_of(template),
        statistics=_stored_statistics(template) if include_statistics else None,
        export_metadata=ExportMetadata(exported_at=clock.utcnow(), exported_by=actor.id),
    )
    logger.info("template.exported", template_id=template.id, include_statistics=include_statistics)
    return exported


async def import_template(session: AsyncSession, data: TemplateImport, actor: Actor) -> ContractTemplate:
    """Create an inactive draft from exported data under a fresh id with zeroed statistics."""
    template_id = f"tpl_imported_{secrets.token_hex(6)}"
    template = ContractTemplate(
        id=template_id,
        family_id=template_id,
        name=data.name,
        description=data.description,
        category=data.category,
        locale=data.locale,
        version=INITIAL_VERSION,
        status=TemplateStatus.DRAFT,
        is_active=False,
        content=data.content,
        content_html=data.content_html,
        variables=[variable.model_dump(mode="json") for variable in data.variables],
        applicable_plans=list(data.applicable_plans),
        applicable_regions=list(data.applicable_regions),
        signing_requirements=data.signing_requirements.model_dump(mode="json"),
        legal=data.legal.model_dump(mode="json"),
        created_by=actor.id,
        created_by_name=actor.name,
        last_modified_by=actor.id,
        last_modified_by_name=actor.name,
        last_modified_at=clock.utcnow(),
    )
    session.add(template)
    await session.flush()
    logger.info("template.imported", template_id=template.id, actor_id=actor.id)
    return template
