from fastapi import APIRouter, Depends, HTTPException, Request, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from esign_engine.api.dependencies.database import commit, get_db
from esign_engine.api.dependencies.redis import redis_dependency
from esign_engine.core.errors import ProviderError
from esign_engine.core.logging import get_logger
from esign_engine.integrations.esignature import extract_callback_json
from esign_engine.models.contract import IntegrationProvider
from esign_engine.schemas.contract import WebhookOutcome
from esign_engine.services import integration_service

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "x-esign-signature"
REJECTED_WEBHOOK_CODES = {
    "webhook_signature_invalid": status.HTTP_401_UNAUTHORIZED,
    "webhook_json_invalid": status.HTTP_400_BAD_REQUEST,
    "webhook_incomplete": status.HTTP_400_BAD_REQUEST,
}


@router.post("/{provider}", response_model=WebhookOutcome)
async def provider_webhook_endpoint(
    provider: IntegrationProvider,
    request: Request,
    session: AsyncSession = Depends(get_db),
    redis_client: Redis | None = Depends(redis_dependency),
) -> WebhookOutcome:
    payload = await request.body()
    if provider == IntegrationProvider.DROPBOX_SIGN:
        payload = extract_callback_json(payload)
    try:
        outcome = await integration_service.handle_webhook(
            session,
            provider,
            payload,
            request.headers.get(SIGNATURE_HEADER),
            headers=dict(request.headers),
            redis_client=redis_client,
        )
    except ProviderError as exc:
        if exc.error_code not in REJECTED_WEBHOOK_CODES:
            raise
        logger.warning("webhook.rejected", provider=provider.value, error_code=exc.error_code)
        raise HTTPException(status_code=REJECTED_WEBHOOK_CODES[exc.error_code], detail=exc.message) from exc
    await commit(session)
    return outcome
