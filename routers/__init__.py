"""
Routers Package.

This package contains the request router that selects a provider and model
for each chat request and drives recovery, caching and learning around it.
"""

from .request_router import RequestRouter, RouteOptions, ProviderMetrics, Candidate, create_router

__all__ = [
    "RequestRouter",
    "RouteOptions",
    "ProviderMetrics",
    "Candidate",
    "create_router",
]
