from .config import AppConfig, StreamConfig, load_config, parse_config
from .errors import (
    ConfigurationError,
    DecodeError,
    FeedError,
    FetchCancelled,
    RPCError,
    TransportError,
)
from .models import Entity, EventFilter, Metadata, RawEvent, SortBy
from .query import Query, QueryState
from .service import FeedService

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "StreamConfig",
    "load_config",
    "parse_config",
    "ConfigurationError",
    "DecodeError",
    "FeedError",
    "FetchCancelled",
    "RPCError",
    "TransportError",
    "Entity",
    "EventFilter",
    "Metadata",
    "RawEvent",
    "SortBy",
    "Query",
    "QueryState",
    "FeedService",
]
