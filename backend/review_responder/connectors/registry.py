"""Registry of review connectors, keyed by vendor kind."""
import logging

from review_responder.connectors.base import ReviewConnector

logger = logging.getLogger(__name__)

_connectors: dict[str, ReviewConnector] = {}


def register(connector: ReviewConnector) -> None:
    """Register (or replace) the connector for its vendor kind."""
    _connectors[connector.kind] = connector
    logger.info("Registered review connector: %s", connector.kind)


def get_connector(kind: str) -> ReviewConnector:
    """Get connector by vendor kind. Raises KeyError if unknown."""
    if not _connectors:
        _init_registry()
    if kind not in _connectors:
        raise KeyError(f"Unknown vendor kind: {kind}. Available: {list(_connectors.keys())}")
    return _connectors[kind]


def all_connectors() -> dict[str, ReviewConnector]:
    if not _connectors:
        _init_registry()
    return dict(_connectors)


def _init_registry() -> None:
    from review_responder.config import get_settings
    from review_responder.connectors.app_store import AppStoreConnector
    from review_responder.connectors.play_store import PlayStoreConnector

    settings = get_settings()
    register(AppStoreConnector(first_poll_max_pages=settings.first_poll_max_pages))
    register(PlayStoreConnector(first_poll_max_pages=settings.first_poll_max_pages))
