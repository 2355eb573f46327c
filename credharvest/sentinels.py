"""
Sentinel values written in place of a credential when acquisition could not
complete. Downstream consumers treat any of these as "manual follow-up
required", never as a usable secret.
"""

NOT_READY = "not-ready"
TIMED_OUT = "timed-out"
CHANNEL_FAILED = "channel-failed"
CHECK_MANUALLY = "check-manually"
EXTRACTION_FAILED = "extraction-failed"
CREDENTIALS_CHECK_FAILED = "credentials-check-failed"
TOKEN_GENERATION_FAILED = "token-generation-failed"
VERIFICATION_FAILED = "verification-failed"

ALL = frozenset({
    NOT_READY,
    TIMED_OUT,
    CHANNEL_FAILED,
    CHECK_MANUALLY,
    EXTRACTION_FAILED,
    CREDENTIALS_CHECK_FAILED,
    TOKEN_GENERATION_FAILED,
    VERIFICATION_FAILED,
})


def is_sentinel(value) -> bool:
    return value in ALL


def contains_sentinel(value: str) -> bool:
    """True if any sentinel appears anywhere inside ``value``."""
    return any(sentinel in value for sentinel in ALL)
