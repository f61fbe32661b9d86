# app/models/__init__.py
"""Pydantic models for AiAm backend"""
