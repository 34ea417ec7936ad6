# src/usage_core/providers/utilities/__init__.py
