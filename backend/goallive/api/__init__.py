"""HTTP surface for the goal.live ledger."""

from goallive.api.server import create_app

__all__ = ["create_app"]
