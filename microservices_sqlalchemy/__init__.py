"""Specification-driven repositories and host wiring for SQLAlchemy microservices."""

__version__ = "0.1.0"
