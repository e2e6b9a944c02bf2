"""
Background cutout service package.

Exposes the worker message protocol, the session coordinator, the download
progress aggregator and the mask compositor, plus a FastAPI application.
"""
