"""HTTP API for the truth layer."""

from regtruth.api.routes_conflicts import router as conflicts_router
from regtruth.api.routes_graph import router as graph_router
from regtruth.api.routes_releases import router as releases_router
from regtruth.api.routes_rules import router as rules_router

__all__ = ["rules_router", "conflicts_router", "releases_router", "graph_router"]
