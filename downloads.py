import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from download_tokens import DecodeError, token_fingerprint


logger = logging.getLogger(__name__)


class IssuanceError(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    MISSING_RESOURCE_ID = "missing_resource_id"
    RESOURCE_NOT_FOUND = "resource_not_found"
    ENTITLEMENT_REQUIRED = "entitlement_required"
    ENTITLEMENT_LOOKUP_FAILED = "entitlement_lookup_failed"
    UNEXPECTED = "unexpected"

    @property
    def status_code(self):
        return _ISSUANCE_STATUS[self]

    @property
    def message(self):
        return _ISSUANCE_MESSAGES[self]


class RedemptionError(str, Enum):
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    RESOURCE_MISMATCH = "resource_mismatch"
    IDENTITY_MISMATCH = "identity_mismatch"
    ENTITLEMENT_EXPIRED = "entitlement_expired"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    TOKEN_ALREADY_USED = "token_already_used"
    UNEXPECTED = "unexpected"

    @property
    def status_code(self):
        return _REDEMPTION_STATUS[self]

    @property
    def message(self):
        return _REDEMPTION_MESSAGES[self]

    @property
    def retry_available(self):
        return self in (RedemptionError.TOKEN_EXPIRED, RedemptionError.TOKEN_ALREADY_USED)


_ISSUANCE_STATUS = {
    IssuanceError.UNAUTHENTICATED: 401,
    IssuanceError.MISSING_RESOURCE_ID: 400,
    IssuanceError.RESOURCE_NOT_FOUND: 404,
    IssuanceError.ENTITLEMENT_REQUIRED: 403,
    IssuanceError.ENTITLEMENT_LOOKUP_FAILED: 500,
    IssuanceError.UNEXPECTED: 500,
}

_ISSUANCE_MESSAGES = {
    IssuanceError.UNAUTHENTICATED: "Authentication required",
    IssuanceError.MISSING_RESOURCE_ID: "Product ID required",
    IssuanceError.RESOURCE_NOT_FOUND: "Book not found",
    IssuanceError.ENTITLEMENT_REQUIRED: "Active subscription required to generate download link",
    IssuanceError.ENTITLEMENT_LOOKUP_FAILED: "Failed to get subscription details",
    IssuanceError.UNEXPECTED: "Internal server error",
}

_REDEMPTION_STATUS = {
    RedemptionError.MISSING_TOKEN: 400,
    RedemptionError.INVALID_TOKEN: 401,
    RedemptionError.TOKEN_EXPIRED: 401,
    RedemptionError.RESOURCE_MISMATCH: 403,
    RedemptionError.IDENTITY_MISMATCH: 401,
    RedemptionError.ENTITLEMENT_EXPIRED: 403,
    RedemptionError.RESOURCE_UNAVAILABLE: 404,
    RedemptionError.TOKEN_ALREADY_USED: 409,
    RedemptionError.UNEXPECTED: 500,
}

_REDEMPTION_MESSAGES = {
    RedemptionError.MISSING_TOKEN: "Download token required",
    RedemptionError.INVALID_TOKEN: "Invalid download link.",
    RedemptionError.TOKEN_EXPIRED: "Download link has expired. Please request a new download.",
    RedemptionError.RESOURCE_MISMATCH: "Download link is not valid for this book",
    RedemptionError.IDENTITY_MISMATCH: "Download link was issued to another account",
    RedemptionError.ENTITLEMENT_EXPIRED: "Active subscription required to download books",
    RedemptionError.RESOURCE_UNAVAILABLE: "Book not found",
    RedemptionError.TOKEN_ALREADY_USED: "This download link was already used.",
    RedemptionError.UNEXPECTED: "Internal server error",
}


@dataclass(frozen=True)
class EntitlementRecord:
    id: str
    subject_id: str
    ends_at: datetime = None


@dataclass(frozen=True)
class ResourceRecord:
    id: str
    title: str
    author: str
    file_location: str
    content_type: str = "application/pdf"
    file_extension: str = "pdf"

    def display_filename(self):
        return f"{self.title} - {self.author}.{self.file_extension}"


@dataclass(frozen=True)
class IssuanceAuditEntry:
    subject_id: str
    resource_id: str
    entitlement_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RedemptionAuditEntry:
    subject_id: str
    resource_id: str
    entitlement_id: str
    redeemed_at: datetime
    token_fingerprint: str


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    expires_in: int
    claim: object
    resource: ResourceRecord


@dataclass(frozen=True)
class AuthorizedDownload:
    resource: ResourceRecord
    file_location: str
    filename: str
    content_type: str
    claim: object


def _utc(epoch):
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


class TokenIssuanceService:
    def __init__(self, codec, catalog, entitlements, audit):
        self.codec = codec
        self.catalog = catalog
        self.entitlements = entitlements
        self.audit = audit

    def issue(self, subject_id, resource_id):
        if not subject_id:
            return None, IssuanceError.UNAUTHENTICATED
        if not resource_id:
            return None, IssuanceError.MISSING_RESOURCE_ID

        try:
            resource = self.catalog.find_offered_resource(str(resource_id))
            if resource is None:
                return None, IssuanceError.RESOURCE_NOT_FOUND
            if not self.entitlements.has_active_entitlement(subject_id):
                return None, IssuanceError.ENTITLEMENT_REQUIRED
            record = self.entitlements.get_entitlement_record(subject_id)
        except Exception:
            logger.exception("download token issuance failed for subject=%s resource=%s", subject_id, resource_id)
            return None, IssuanceError.UNEXPECTED

        if record is None or str(record.subject_id) != str(subject_id):
            logger.error("entitlement check passed but no record found for subject=%s", subject_id)
            return None, IssuanceError.ENTITLEMENT_LOOKUP_FAILED

        token, claim = self.codec.encode(subject_id, resource.id, record.id)

        try:
            self.audit.record_issuance(
                IssuanceAuditEntry(
                    subject_id=claim.subject_id,
                    resource_id=claim.resource_id,
                    entitlement_id=claim.entitlement_id,
                    issued_at=_utc(claim.issued_at),
                    expires_at=_utc(claim.expires_at),
                )
            )
        except Exception:
            logger.warning("failed to log token generation for subject=%s", claim.subject_id, exc_info=True)

        return (
            IssuedToken(
                token=token,
                expires_at=_utc(claim.expires_at),
                expires_in=claim.expires_at - claim.issued_at,
                claim=claim,
                resource=resource,
            ),
            None,
        )


class TokenRedemptionService:
    def __init__(self, codec, catalog, entitlements, audit, ledger=None):
        self.codec = codec
        self.catalog = catalog
        self.entitlements = entitlements
        self.audit = audit
        self.ledger = ledger

    def redeem(self, token, expected_resource_id, caller_subject_id):
        if not token:
            return None, RedemptionError.MISSING_TOKEN

        claim, decode_error = self.codec.decode(token)
        if decode_error is DecodeError.EXPIRED:
            return None, RedemptionError.TOKEN_EXPIRED
        if decode_error is not None:
            return None, RedemptionError.INVALID_TOKEN

        if claim.resource_id != str(expected_resource_id):
            return None, RedemptionError.RESOURCE_MISMATCH
        if not caller_subject_id or claim.subject_id != str(caller_subject_id):
            return None, RedemptionError.IDENTITY_MISMATCH

        try:
            # Read entitlement fresh; it may have been revoked since issuance.
            if not self.entitlements.has_active_entitlement(claim.subject_id):
                return None, RedemptionError.ENTITLEMENT_EXPIRED
            resource = self.catalog.find_offered_resource(claim.resource_id)
            if resource is None:
                return None, RedemptionError.RESOURCE_UNAVAILABLE
            if self.ledger is not None and not self.ledger.mark_redeemed(claim.token_id, _utc(claim.expires_at)):
                return None, RedemptionError.TOKEN_ALREADY_USED
        except Exception:
            logger.exception("download token redemption failed for subject=%s resource=%s", caller_subject_id, expected_resource_id)
            return None, RedemptionError.UNEXPECTED

        try:
            self.audit.record_redemption(
                RedemptionAuditEntry(
                    subject_id=claim.subject_id,
                    resource_id=claim.resource_id,
                    entitlement_id=claim.entitlement_id,
                    redeemed_at=_utc(self.codec.now()),
                    token_fingerprint=token_fingerprint(token),
                )
            )
        except Exception:
            logger.warning("failed to log download for subject=%s", claim.subject_id, exc_info=True)

        return (
            AuthorizedDownload(
                resource=resource,
                file_location=resource.file_location,
                filename=resource.display_filename(),
                content_type=resource.content_type,
                claim=claim,
            ),
            None,
        )
