# app/routers/__init__.py
"""API routers for AiAm backend"""
