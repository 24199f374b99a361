# GoClaw Error Taxonomy
#
#   Validation            malformed secrets/manifest        fatal, never retried
#   Transient-Transport   timeouts, resets, 5xx, 429        retried with backoff in the client
#   Provider-Unavailable  one provider down or rejecting    blacklist + fail over to next bid
#   Marketplace-Protocol  no bids, all providers failed     terminal, surfaced on the record
#   Configuration         our own credentials missing       fatal at startup
#
# Failures are matched by class and HTTP status, never by message text.

from enum import Enum


class ErrorCode(str, Enum):
    CONFIGURATION = "CFG_001"
    VALIDATION = "VAL_001"
    DECRYPTION = "SEC_001"
    PROVIDER_UNAVAILABLE = "MKT_001"
    NO_BIDS_RECEIVED = "MKT_002"
    ALL_PROVIDERS_FAILED = "MKT_003"
    TRANSIENT_TRANSPORT = "MKT_004"
    CERTIFICATE = "MKT_005"
    REQUEST_REJECTED = "MKT_006"
    PROTOCOL = "MKT_007"
    WEBHOOK_SIGNATURE = "PAY_001"


class GoclawError(Exception):
    """Base class for every error this service raises on purpose."""

    code = ErrorCode.VALIDATION

    def __init__(self, message):
        self.message = message
        super().__init__(message)

    def to_dict(self):
        return {"code": self.code.value, "message": self.message}


class ConfigurationError(GoclawError):
    """A setting this service needs for itself is missing or invalid."""

    code = ErrorCode.CONFIGURATION

    def __init__(self, setting, message):
        self.setting = setting
        super().__init__(f"{setting}: {message}")


class ValidationError(GoclawError):
    """Input failed validation before any marketplace call was made."""

    code = ErrorCode.VALIDATION

    def __init__(self, field, message):
        self.field = field
        super().__init__(f"Invalid {field}: {message}")


class DecryptionError(GoclawError):
    """Ciphertext is corrupt, tampered with, or sealed under another key."""

    code = ErrorCode.DECRYPTION


# ── Marketplace ───────────────────────────────────────────────────────


class MarketplaceError(GoclawError):
    """Anything that went wrong talking to the marketplace."""

    code = ErrorCode.PROTOCOL

    def __init__(self, message, provider=None, dseq=None):
        self.provider = provider
        self.dseq = dseq
        super().__init__(message)


class TransientTransportError(MarketplaceError):
    """Retry budget exhausted on timeouts, resets, 5xx or 429."""

    code = ErrorCode.TRANSIENT_TRANSPORT


class MarketplaceRequestError(MarketplaceError):
    """The marketplace refused the request (4xx other than 429)."""

    code = ErrorCode.REQUEST_REJECTED

    def __init__(self, message, status_code, provider=None, dseq=None):
        self.status_code = status_code
        super().__init__(message, provider=provider, dseq=dseq)

    @property
    def manifest_rejected(self):
        return self.status_code in (400, 422)


class MarketplaceProtocolError(MarketplaceError):
    """The marketplace answered, but not with what the protocol promises."""

    code = ErrorCode.PROTOCOL


class ProviderUnavailableError(MarketplaceError):
    """A specific provider is unreachable or rejecting leases."""

    code = ErrorCode.PROVIDER_UNAVAILABLE

    def __init__(self, provider, detail="", dseq=None):
        message = f"Provider {provider} is unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, provider=provider, dseq=dseq)


class CertificateError(MarketplaceError):
    code = ErrorCode.CERTIFICATE


class NoBidsError(MarketplaceError):
    code = ErrorCode.NO_BIDS_RECEIVED

    def __init__(self, dseq=None):
        super().__init__("no bids received", dseq=dseq)


class AllProvidersFailedError(MarketplaceError):
    """Every ranked bid was tried and none produced a lease."""

    code = ErrorCode.ALL_PROVIDERS_FAILED

    def __init__(self, attempted_providers, last_error, dseq=None):
        self.attempted_providers = list(attempted_providers)
        self.last_error = last_error
        providers = ", ".join(self.attempted_providers) or "none"
        super().__init__(
            f"All {len(self.attempted_providers)} providers failed "
            f"(attempted: {providers}). Last error: {last_error}",
            dseq=dseq,
        )


# ── Payments ──────────────────────────────────────────────────────────


class WebhookSignatureError(GoclawError):
    """Webhook payload did not verify against the signing secret."""

    code = ErrorCode.WEBHOOK_SIGNATURE
