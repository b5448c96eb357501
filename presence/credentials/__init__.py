"""
presence.credentials — Rotating attendance credentials.

Import pattern::

    from presence.credentials import CredentialIssuer, issue
"""

from presence.credentials.issuer import (  # noqa: F401
    CredentialIssuer,
    compute_checksum,
    issue,
    verify_checksum,
)
