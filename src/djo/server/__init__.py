"""HTTP gateway for Document Job Orchestrator."""

from djo.server.app import create_app

__all__ = ["create_app"]
