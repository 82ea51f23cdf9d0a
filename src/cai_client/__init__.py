from loguru import logger

from .client import CaiClient, ChatHandle
from .config import ClientConfig
from .engine import OperationState, TurnExchangeEngine
from .errors import (
    CaiAuthenticationError,
    CaiConnectionError,
    CaiDecodingError,
    CaiEncodingError,
    CaiError,
    CaiNotAppliedError,
    CaiServerError,
    CaiTimeoutError,
    CaiValidationError,
)
from .http import HttpRequester
from .logging_utils import configure_logging
from .models import (
    Author,
    AuthSession,
    Candidate,
    Chat,
    ChatHistory,
    Envelope,
    Frame,
    Page,
    Turn,
    TurnKey,
)
from .pagination import fetch_all, iter_pages
from .transport import ConnectionState, Transport, WebSocketTransport

logger.disable("cai_client")

__all__ = [
    "AuthSession",
    "Author",
    "CaiAuthenticationError",
    "CaiClient",
    "CaiConnectionError",
    "CaiDecodingError",
    "CaiEncodingError",
    "CaiError",
    "CaiNotAppliedError",
    "CaiServerError",
    "CaiTimeoutError",
    "CaiValidationError",
    "Candidate",
    "Chat",
    "ChatHandle",
    "ChatHistory",
    "ClientConfig",
    "ConnectionState",
    "Envelope",
    "Frame",
    "HttpRequester",
    "OperationState",
    "Page",
    "Transport",
    "Turn",
    "TurnExchangeEngine",
    "TurnKey",
    "WebSocketTransport",
    "configure_logging",
    "fetch_all",
    "iter_pages",
]
