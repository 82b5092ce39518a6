"""
Telemetry Hub.

Protocol adapters, a Redis Streams message backbone and device command
dispatch for multi-tenant IoT deployments.
"""
__version__ = "0.1.0"
