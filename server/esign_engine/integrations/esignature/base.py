"""
E-signature provider interface.

Every provider, the native engine included, implements the same four
operations and reports vendor state as a ``ProviderStatusSnapshot`` already
translated into the canonical contract/signer vocabulary through the
provider's single status-mapping table.
"""

import base64
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import aiohttp
from aiohttp import ClientTimeout

from esign_engine.core.errors import ProviderError
from esign_engine.models.contract import ContractStatus, IntegrationProvider, SignedContract, SignerStatus
from esign_engine.schemas.common import Actor
from esign_engine.schemas.contract import SigningReference

logger = logging.getLogger(__name__)

# vendor word -> (contract status, signer status); None leaves that axis untouched
StatusTable = Mapping[str, Tuple[Optional[ContractStatus], Optional[SignerStatus]]]


@dataclass
class SignerSnapshot:
    """One recipient as reported by a provider."""
    email: str
    status: Optional[SignerStatus] = None
    raw_status: Optional[str] = None
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None


@dataclass
class ProviderStatusSnapshot:
    """Provider state for one external document, in canonical vocabulary."""
    provider: IntegrationProvider
    external_id: str
    status: Optional[ContractStatus] = None
    raw_status: Optional[str] = None
    signers: List[SignerSnapshot] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SendReceipt:
    """Result of handing a contract to a provider."""
    external_id: str
    status: ContractStatus
    provider: IntegrationProvider
    signing_references: List[SigningReference] = field(default_factory=list)
    provider_response: Dict[str, Any] = field(default_factory=dict)


def map_status(
    table: StatusTable,
    raw_status: Optional[str],
    *,
    case: str = "lower",
) -> Tuple[Optional[ContractStatus], Optional[SignerStatus]]:
    """Translate a vendor status word. Unknown words map to no change on either axis."""
    if not raw_status:
        return None, None
    key = raw_status.upper() if case == "upper" else raw_status.lower()
    return table.get(key, (None, None))


def parse_timestamp(value: Union[str, int, float, None]) -> Optional[datetime]:
    """Parse ISO-8601 strings (``Z`` suffix allowed) and epoch seconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    try:
        # DocuSign sends seven fractional digits
        if "." in text:
            head, _, tail = text.partition(".")
            digits = "".join(ch for ch in tail if ch.isdigit())
            suffix = tail[len(digits):]
            text = f"{head}.{digits[:6]}{suffix}"
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def hmac_digest(secret: str, payload: bytes, *, encoding: str = "hex") -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256)
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    return digest.hexdigest()


def load_json_payload(provider: IntegrationProvider, payload: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProviderError(
            f"Invalid webhook JSON: {exc}",
            provider=provider.value,
            error_code="webhook_json_invalid",
        ) from exc
    if not isinstance(data, dict):
        raise ProviderError("Webhook body must be a JSON object", provider=provider.value, error_code="webhook_json_invalid")
    return data


class SignatureProvider(ABC):
    """Abstract base class for signing providers."""

    provider: IntegrationProvider

    @abstractmethod
    async def send(
        self,
        contract: SignedContract,
        *,
        message: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> SendReceipt:
        """Distribute the contract to its signers."""

    @abstractmethod
    async def get_status(self, external_id: str) -> ProviderStatusSnapshot:
        """Fetch the provider's current view of a document."""

    @abstractmethod
    def parse_webhook(self, payload: bytes) -> ProviderStatusSnapshot:
        """Translate a raw webhook body into a snapshot."""

    @abstractmethod
    async def download_final_document(self, external_id: str) -> bytes:
        """Fetch the final signed document."""

    def verify_webhook(self, payload: bytes, signature: Optional[str], headers: Optional[Mapping[str, str]] = None) -> None:
        """Raise ``ProviderError`` when the webhook is not authentic. Providers that do not sign callbacks accept all."""

    async def close(self) -> None:
        """Release any held network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class ProviderRegistry:
    """Lookup table from provider name to adapter class."""

    _providers: Dict[IntegrationProvider, type] = {}

    @classmethod
    def register(cls, provider: IntegrationProvider, adapter_class: type) -> None:
        cls._providers[provider] = adapter_class

    @classmethod
    def create(cls, provider: Union[IntegrationProvider, str], **config) -> SignatureProvider:
        try:
            key = IntegrationProvider(provider)
            adapter_class = cls._providers[key]
        except (ValueError, KeyError) as exc:
            raise ProviderError(
                f"Unsupported provider: {provider}",
                provider=str(getattr(provider, "value", provider)),
                error_code="unsupported_provider",
            ) from exc
        return adapter_class(**config)

    @classmethod
    def supported(cls) -> List[IntegrationProvider]:
        return list(cls._providers.keys())


class HttpSignatureProvider(SignatureProvider):
    """Shared HTTP plumbing for vendor adapters."""

    def __init__(self, base_url: str, timeout_seconds: int = 30, **config):
        self.base_url = base_url.rstrip("/")
        self.config = config
        # Created lazily to avoid binding to an event loop at construction time
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=timeout_seconds, connect=min(10, timeout_seconds))

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._default_headers())
        return self._session

    def _error(self, message: str, error_code: str, **kwargs) -> ProviderError:
        return ProviderError(message, provider=self.provider.value, error_code=error_code, **kwargs)

    def _error_details(self, data: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        """Vendor-specific (message, code) extracted from an error body."""
        return data.get("message"), data.get("errorCode") or data.get("code")

    async def _handle_api_error(self, response: aiohttp.ClientResponse, operation: str) -> None:
        """Map a non-success vendor response onto ``ProviderError``."""
        if response.status in (200, 201, 202, 204):
            return

        error_message = f"{self.provider.value} API error in {operation}"
        error_code = "api_error"
        error_data: Dict[str, Any] = {}
        try:
            error_data = await response.json()
            message, code = self._error_details(error_data if isinstance(error_data, dict) else {})
            error_message = message or error_message
            error_code = code or error_code
        except (aiohttp.ContentTypeError, json.JSONDecodeError):
            error_message = await response.text() or error_message

        logger.error(f"{self.provider.value} {operation} failed with HTTP {response.status}: {error_message}")
        if response.status == 401:
            raise self._error("Authentication failed - check credentials", "AUTH_ERROR", provider_response=error_data)
        elif response.status == 403:
            raise self._error("Insufficient permissions", "PERMISSION_ERROR", provider_response=error_data)
        elif response.status == 404:
            raise self._error("Resource not found", "NOT_FOUND", provider_response=error_data)
        elif response.status == 429:
            retry_after = response.headers.get("Retry-After", "60")
            raise self._error(f"Rate limit exceeded, retry after {retry_after}s", "RATE_LIMIT", provider_response=error_data)
        elif response.status >= 500:
            raise self._error(f"{self.provider.value} server error", "SERVER_ERROR", provider_response=error_data)
        raise self._error(error_message, error_code, provider_response=error_data)

    def _transport_error(self, operation: str, exc: Exception) -> ProviderError:
        logger.error(f"{self.provider.value} API error in {operation}: {exc}")
        return self._error(f"{operation} failed: {exc}", "api_error")

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
