# market_stream/client/__init__.py
from .connection_manager import ClientConnectionManager, ClientState, ConnectionPool

__all__ = ["ClientConnectionManager", "ClientState", "ConnectionPool"]
