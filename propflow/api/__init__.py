"""FastAPI surface for a propflow app."""

from propflow.api.app import create_api

__all__ = ['create_api']
