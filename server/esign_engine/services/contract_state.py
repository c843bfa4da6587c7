from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy.orm.attributes import flag_modified

from esign_engine.models.contract import ContractSigner, ContractStatus, SignedContract, SignerStatus

ALLOWED_TRANSITIONS: dict[ContractStatus, tuple[ContractStatus, ...]] = {
    ContractStatus.DRAFT: (
        ContractStatus.SENT,
        ContractStatus.PARTIALLY_SIGNED,
        ContractStatus.FULLY_SIGNED,
        ContractStatus.DECLINED,
        ContractStatus.EXPIRED,
        ContractStatus.VOIDED,
    ),
    ContractStatus.SENT: (
        ContractStatus.PARTIALLY_SIGNED,
        ContractStatus.FULLY_SIGNED,
        ContractStatus.DECLINED,
        ContractStatus.EXPIRED,
        ContractStatus.VOIDED,
    ),
    ContractStatus.PARTIALLY_SIGNED: (
        ContractStatus.FULLY_SIGNED,
        ContractStatus.DECLINED,
        ContractStatus.EXPIRED,
        ContractStatus.VOIDED,
    ),
    ContractStatus.FULLY_SIGNED: (ContractStatus.COMPLETED,),
    ContractStatus.COMPLETED: (),
    ContractStatus.DECLINED: (ContractStatus.VOIDED,),
    ContractStatus.EXPIRED: (ContractStatus.VOIDED,),
    ContractStatus.VOIDED: (),
}

# No further signing activity is accepted in these states.
CLOSED_STATUSES = frozenset(
    {
        ContractStatus.FULLY_SIGNED,
        ContractStatus.COMPLETED,
        ContractStatus.DECLINED,
        ContractStatus.EXPIRED,
        ContractStatus.VOIDED,
    }
)
SEALED_STATUSES = frozenset({ContractStatus.FULLY_SIGNED, ContractStatus.COMPLETED})

# Forward order used when merging state reported by an external provider.
CONTRACT_PROGRESS_RANK: dict[ContractStatus, int] = {
    ContractStatus.DRAFT: 0,
    ContractStatus.SENT: 1,
    ContractStatus.PARTIALLY_SIGNED: 2,
    ContractStatus.FULLY_SIGNED: 3,
    ContractStatus.COMPLETED: 4,
}
ABANDONED_STATUSES = frozenset({ContractStatus.DECLINED, ContractStatus.EXPIRED, ContractStatus.VOIDED})

SIGNER_TERMINAL_STATUSES = frozenset({SignerStatus.SIGNED, SignerStatus.DECLINED, SignerStatus.EXPIRED})
SIGNER_PROGRESS_RANK: dict[SignerStatus, int] = {
    SignerStatus.PENDING: 0,
    SignerStatus.SENT: 1,
    SignerStatus.OPENED: 2,
    SignerStatus.SIGNED: 3,
    SignerStatus.DECLINED: 3,
    SignerStatus.EXPIRED: 3,
}


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    reason: str | None = None


def _can_transition(current: ContractStatus, target: ContractStatus) -> bool:
    allowed: Iterable[ContractStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def advance_contract(contract: SignedContract, target: ContractStatus, now: datetime) -> TransitionResult:
    if contract.status == target:
        return TransitionResult(succeeded=True)

    if not _can_transition(contract.status, target):
        return TransitionResult(False, f"contract transition {contract.status.value} -> {target.value} not permitted")

    if target == ContractStatus.SENT and contract.sent_at is None:
        contract.sent_at = now
    if target in SEALED_STATUSES and contract.completed_at is None:
        contract.completed_at = now
    if target == ContractStatus.VOIDED and contract.voided_at is None:
        contract.voided_at = now

    contract.status = target
    return TransitionResult(succeeded=True)


def advance_signer(signer: ContractSigner, target: SignerStatus, now: datetime) -> TransitionResult:
    """Move a signer forward along pending -> sent -> opened -> terminal."""
    if signer.status == target:
        return TransitionResult(succeeded=True)
    if signer.status in SIGNER_TERMINAL_STATUSES:
        return TransitionResult(False, f"signer already {signer.status.value}")
    if SIGNER_PROGRESS_RANK[target] < SIGNER_PROGRESS_RANK[signer.status]:
        return TransitionResult(False, f"signer transition {signer.status.value} -> {target.value} would regress")

    if target in (SignerStatus.SENT, SignerStatus.OPENED, SignerStatus.SIGNED) and signer.sent_at is None:
        signer.sent_at = now
    if target == SignerStatus.OPENED and signer.opened_at is None:
        signer.opened_at = now
    if target == SignerStatus.SIGNED and signer.signed_at is None:
        signer.signed_at = now
    if target == SignerStatus.DECLINED and signer.declined_at is None:
        signer.declined_at = now
    if target == SignerStatus.EXPIRED and signer.expired_at is None:
        signer.expired_at = now

    signer.status = target
    return TransitionResult(succeeded=True)


def status_from_signers(signers: Iterable[ContractSigner]) -> ContractStatus | None:
    """Contract status implied purely by the signer conjunction, if any."""
    statuses = [signer.status for signer in signers]
    if not statuses:
        return None
    if any(status == SignerStatus.DECLINED for status in statuses):
        return ContractStatus.DECLINED
    signed = sum(1 for status in statuses if status == SignerStatus.SIGNED)
    if signed == len(statuses):
        return ContractStatus.FULLY_SIGNED
    if signed > 0:
        return ContractStatus.PARTIALLY_SIGNED
    return None


def is_past_expiry(contract: SignedContract, now: datetime) -> bool:
    return contract.expires_at is not None and now > contract.expires_at


def apply_lazy_expiry(contract: SignedContract, now: datetime) -> bool:
    """Coerce an overdue contract to expired. Returns True when the contract is expired by this check."""
    if not is_past_expiry(contract, now) or contract.status in CLOSED_STATUSES:
        return False
    contract.status = ContractStatus.EXPIRED
    for signer in contract.signers:
        if signer.status not in SIGNER_TERMINAL_STATUSES:
            advance_signer(signer, SignerStatus.EXPIRED, now)
    touch(contract, now)
    return True


def touch(contract: SignedContract, now: datetime) -> None:
    """Record activity and force a versioned UPDATE of the contract row."""
    contract.last_activity_at = now
    flag_modified(contract, "last_activity_at")
