"""Pydantic models for model definitions and the HTTP API."""
