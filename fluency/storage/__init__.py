"""Persistence: key-value gateway and append-only fallback store."""
from .fallback import FallbackWriter
from .gateway import JsonFileGateway, MemoryGateway, PersistenceGateway, create_gateway

__all__ = ["FallbackWriter", "JsonFileGateway", "MemoryGateway", "PersistenceGateway", "create_gateway"]
