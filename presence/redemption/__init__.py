"""
presence.redemption — Credential validation and attendance submission.
"""

from presence.redemption.errors import (  # noqa: F401
    AlreadyRedeemed,
    ExpiredCredential,
    MalformedCredential,
    OutOfRange,
    RedemptionError,
    StoreUnavailable,
)
from presence.redemption.protocol import (  # noqa: F401
    RedemptionProtocol,
    RedemptionResult,
    validate_freshness,
    validate_structure,
)
