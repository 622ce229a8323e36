from review_responder.connectors.base import (
    CredentialFormatError,
    DiscoveredResource,
    FailureKind,
    NormalizedReview,
    PostResult,
    ReviewConnector,
    VendorAuthError,
    VendorCredentials,
    VendorError,
)
from review_responder.connectors.registry import all_connectors, get_connector, register

__all__ = [
    "CredentialFormatError",
    "DiscoveredResource",
    "FailureKind",
    "NormalizedReview",
    "PostResult",
    "ReviewConnector",
    "VendorAuthError",
    "VendorCredentials",
    "VendorError",
    "all_connectors",
    "get_connector",
    "register",
]
