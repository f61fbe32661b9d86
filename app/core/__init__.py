# app/core/__init__.py
"""Core modules for AiAm backend"""
