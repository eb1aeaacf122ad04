"""TCP port scanner with blockchain RPC, web and API service detection."""

__version__ = "0.1.0"
