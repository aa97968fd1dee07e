"""Installation and update engine exposed over a small FastAPI service."""

__version__ = "0.1.0"
