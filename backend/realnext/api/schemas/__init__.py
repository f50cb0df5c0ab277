"""Pydantic schemas for billing documents and gateway callbacks."""
