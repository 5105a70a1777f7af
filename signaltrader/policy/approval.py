from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from signaltrader.clock import ensure_utc, utc_now
from signaltrader.policy.contracts import OrderPreview, PolicyResult, TradingHaltedError
from signaltrader.storage.models import ApprovalRecord, ApprovalStatus
from signaltrader.storage.store import StateStore

LOGGER = logging.getLogger(__name__)
SECURITY_LOGGER = logging.getLogger("signaltrader.security")

TOKEN_VERSION = 1


class ApprovalError(RuntimeError):
    """Approval token cannot be used."""


class ApprovalExpiredError(ApprovalError):
    """Approval token is past its expiry."""


class ApprovalInvalidatedError(ApprovalError):
    """Approval was revoked before use (kill switch, advisor decline)."""


class ApprovalIntegrityError(ApprovalError):
    """Token signature, encoding or identity does not check out."""


class ApprovalReplayError(ApprovalIntegrityError):
    """Approval was already consumed once."""


class ApprovalBindingError(ApprovalIntegrityError):
    """Submitted order parameters differ from the approved ones."""


@dataclass(frozen=True, slots=True)
class IssuedApproval:
    token: str
    approval_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class ValidatedApproval:
    approval_id: str
    params: dict[str, str]
    issued_at: datetime
    expires_at: datetime


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def params_digest(params: dict[str, str]) -> str:
    return hashlib.sha256(canonical_json(params).encode("utf-8")).hexdigest()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class ApprovalProtocol:
    """
    Issues and redeems single-use approvals for policy-allowed orders.

    A token is ``base64url(payload).hex(hmac_sha256(secret, payload))`` where
    the payload is canonical JSON of the approval id, the exact broker order
    parameters and the validity window. The persisted approval record is the
    authority on state; the token only proves what was approved.
    """

    def __init__(self, store: StateStore, secret: str | bytes, *, default_ttl_seconds: int = 300):
        key = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        if len(key) < 16:
            raise ValueError("approval secret must be at least 16 bytes")
        self.store = store
        self._key = key
        self.default_ttl_seconds = default_ttl_seconds

    def _sign(self, body: bytes) -> str:
        return hmac.new(self._key, body, hashlib.sha256).hexdigest()

    def _encode(self, payload: dict[str, Any]) -> str:
        body = canonical_json(payload).encode("utf-8")
        return f"{_b64encode(body)}.{self._sign(body)}"

    def _decode(self, token: str) -> dict[str, Any]:
        encoded, sep, signature = str(token).rpartition(".")
        if not sep or not encoded or not signature:
            raise ApprovalIntegrityError("malformed approval token")
        try:
            body = _b64decode(encoded)
        except (binascii.Error, ValueError) as exc:
            raise ApprovalIntegrityError("approval token is not valid base64") from exc
        if not hmac.compare_digest(self._sign(body), signature):
            raise ApprovalIntegrityError("approval token signature mismatch")
        try:
            payload = json.loads(body.decode("utf-8"))
        except ValueError as exc:
            raise ApprovalIntegrityError("approval token payload is not valid JSON") from exc
        if not isinstance(payload, dict) or payload.get("v") != TOKEN_VERSION:
            raise ApprovalIntegrityError("unsupported approval token version")
        return payload

    def issue(
        self,
        preview: OrderPreview,
        result: PolicyResult,
        *,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> IssuedApproval:
        if not result.allowed:
            raise ApprovalError(
                f"cannot approve rejected order for {preview.symbol}: {','.join(result.rule_ids)}"
            )
        risk_state = self.store.get_risk_state()
        if risk_state.kill_switch_active:
            raise TradingHaltedError(f"kill switch active: {risk_state.kill_switch_reason or 'no reason'}")
        issued_at = ensure_utc(now or utc_now())
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        expires_at = issued_at + timedelta(seconds=max(1, int(ttl)))
        approval_id = uuid.uuid4().hex
        params = preview.order_params()
        token = self._encode(
            {
                "v": TOKEN_VERSION,
                "approval_id": approval_id,
                "params": params,
                "issued_at": issued_at.isoformat(),
                "expires_at": expires_at.isoformat(),
            }
        )
        self.store.add_approval(
            ApprovalRecord(
                approval_id=approval_id,
                params=params,
                params_digest=params_digest(params),
                status=ApprovalStatus.ISSUED,
                issued_at=issued_at,
                expires_at=expires_at,
            )
        )
        LOGGER.info(
            "Approval issued id=%s %s %s expires_at=%s",
            approval_id,
            preview.side,
            preview.symbol,
            expires_at.isoformat(),
        )
        return IssuedApproval(token=token, approval_id=approval_id, issued_at=issued_at, expires_at=expires_at)

    def approve(
        self,
        preview: OrderPreview,
        result: PolicyResult,
        *,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> PolicyResult:
        issued = self.issue(preview, result, ttl_seconds=ttl_seconds, now=now)
        return result.with_approval(token=issued.token, approval_id=issued.approval_id, expires_at=issued.expires_at)

    def validate(self, token: str, *, now: datetime | None = None) -> ValidatedApproval:
        now = ensure_utc(now or utc_now())
        try:
            payload = self._decode(token)
        except ApprovalIntegrityError as exc:
            SECURITY_LOGGER.warning("Rejected approval token: %s", exc)
            raise
        approval_id = str(payload.get("approval_id", ""))
        params = payload.get("params")
        if not approval_id or not isinstance(params, dict):
            SECURITY_LOGGER.warning("Rejected approval token: missing id or params")
            raise ApprovalIntegrityError("approval token missing id or params")

        record = self.store.get_approval(approval_id)
        if record is None:
            SECURITY_LOGGER.warning("Rejected approval token: unknown approval_id=%s", approval_id)
            raise ApprovalIntegrityError(f"unknown approval {approval_id}")
        if record.params_digest != params_digest(params):
            SECURITY_LOGGER.error("Approval binding mismatch approval_id=%s", approval_id)
            raise ApprovalBindingError(f"approval {approval_id} parameters do not match the issued record")
        if record.status == ApprovalStatus.CONSUMED:
            SECURITY_LOGGER.error("Approval replay attempt approval_id=%s", approval_id)
            raise ApprovalReplayError(f"approval {approval_id} was already used")
        if record.status == ApprovalStatus.INVALIDATED:
            raise ApprovalInvalidatedError(
                f"approval {approval_id} was invalidated: {record.invalidated_reason or 'no reason'}"
            )
        if record.status == ApprovalStatus.EXPIRED or now >= record.expires_at:
            raise ApprovalExpiredError(f"approval {approval_id} expired at {record.expires_at.isoformat()}")
        return ValidatedApproval(
            approval_id=approval_id,
            params={str(k): str(v) for k, v in params.items()},
            issued_at=record.issued_at,
            expires_at=record.expires_at,
        )

    def consume(self, approval_id: str, *, now: datetime | None = None) -> None:
        now = ensure_utc(now or utc_now())
        if self.store.consume_approval(approval_id, now):
            LOGGER.info("Approval consumed id=%s", approval_id)
            return
        record = self.store.get_approval(approval_id)
        if record is None:
            SECURITY_LOGGER.warning("Consume of unknown approval_id=%s", approval_id)
            raise ApprovalIntegrityError(f"unknown approval {approval_id}")
        if record.status == ApprovalStatus.CONSUMED:
            SECURITY_LOGGER.error("Approval replay attempt approval_id=%s", approval_id)
            raise ApprovalReplayError(f"approval {approval_id} was already used")
        if record.status == ApprovalStatus.INVALIDATED:
            raise ApprovalInvalidatedError(
                f"approval {approval_id} was invalidated: {record.invalidated_reason or 'no reason'}"
            )
        raise ApprovalExpiredError(f"approval {approval_id} expired at {record.expires_at.isoformat()}")

    def redeem(
        self,
        token: str,
        params: dict[str, str],
        *,
        now: datetime | None = None,
    ) -> ValidatedApproval:
        """Validate, check the exact parameter binding, then consume once."""
        validated = self.validate(token, now=now)
        if canonical_json(params) != canonical_json(validated.params):
            SECURITY_LOGGER.error("Approval binding mismatch on submit approval_id=%s", validated.approval_id)
            raise ApprovalBindingError(
                f"submitted parameters differ from approval {validated.approval_id}"
            )
        self.consume(validated.approval_id, now=now)
        return validated

    def invalidate(self, approval_id: str, reason: str) -> bool:
        changed = self.store.invalidate_approval(approval_id, reason)
        if changed:
            LOGGER.info("Approval invalidated id=%s reason=%s", approval_id, reason)
        return changed

    def invalidate_outstanding(self, reason: str) -> int:
        count = self.store.invalidate_outstanding_approvals(reason)
        if count:
            LOGGER.warning("Invalidated %d outstanding approval(s) reason=%s", count, reason)
        return count

    def expire_stale(self, *, now: datetime | None = None) -> int:
        return self.store.expire_approvals(ensure_utc(now or utc_now()))
