# app/services/__init__.py
"""Service modules for AiAm backend"""
