"""
Backend package for the Capstone API.

This package provides a FastAPI application backed by a persistence gateway
(SQLAlchemy or in-memory) and media adapters for speech synthesis and object
storage.
"""
