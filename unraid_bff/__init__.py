"""
Backend-for-frontend for the Unraid PWA.

This package provides a FastAPI application that proxies an Unraid GraphQL
API, normalizes its responses for the UI, stores server credentials
encrypted at rest, and gatekeeps write actions.
"""
