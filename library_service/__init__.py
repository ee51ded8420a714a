"""LibraryHub: catalog, loans and fines over a pluggable data store."""
from .app import create_app

__all__ = ["create_app"]
