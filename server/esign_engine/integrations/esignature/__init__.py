"""
E-signature provider adapters.

Every provider implements ``SignatureProvider`` and is looked up by name in
``ProviderRegistry``.
"""

from esign_engine.models.contract import IntegrationProvider

from .adobe_sign_adapter import ADOBE_SIGN_STATUS_MAP, AdobeSignAdapter, OAuthTokenSource
from .base import (
    HttpSignatureProvider,
    ProviderRegistry,
    ProviderStatusSnapshot,
    SendReceipt,
    SignatureProvider,
    SignerSnapshot,
    map_status,
    parse_timestamp,
)
from .docusign_adapter import DOCUSIGN_STATUS_MAP, DocuSignAdapter
from .dropbox_sign_adapter import DROPBOX_SIGN_STATUS_MAP, DropboxSignAdapter, extract_callback_json
from .native_adapter import NativeAdapter

ProviderRegistry.register(IntegrationProvider.NATIVE, NativeAdapter)
ProviderRegistry.register(IntegrationProvider.DOCUSIGN, DocuSignAdapter)
ProviderRegistry.register(IntegrationProvider.ADOBE_SIGN, AdobeSignAdapter)
ProviderRegistry.register(IntegrationProvider.DROPBOX_SIGN, DropboxSignAdapter)

__all__ = [
    "ADOBE_SIGN_STATUS_MAP",
    "AdobeSignAdapter",
    "DOCUSIGN_STATUS_MAP",
    "DROPBOX_SIGN_STATUS_MAP",
    "DocuSignAdapter",
    "DropboxSignAdapter",
    "HttpSignatureProvider",
    "NativeAdapter",
    "OAuthTokenSource",
    "ProviderRegistry",
    "ProviderStatusSnapshot",
    "SendReceipt",
    "SignatureProvider",
    "SignerSnapshot",
    "extract_callback_json",
    "map_status",
    "parse_timestamp",
]
