"""
Adapters layer - External integrations (Microsoft Graph API).
"""

from .calendar_source import (
    BusyFetchResult,
    CalendarEvent,
    CalendarProvider,
    CalendarSourceAdapter,
    ProviderBusyResponse,
)
from .graph_authenticator import GraphAuthenticator
from .graph_client import GraphClient
from .mock_graph_client import MockGraphClient

__all__ = [
    "BusyFetchResult",
    "CalendarEvent",
    "CalendarProvider",
    "CalendarSourceAdapter",
    "GraphAuthenticator",
    "GraphClient",
    "MockGraphClient",
    "ProviderBusyResponse",
]
