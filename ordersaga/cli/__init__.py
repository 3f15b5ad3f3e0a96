# ============================================
# FILE: ordersaga/cli/__init__.py
# ============================================
"""
Command-line interface for operating the checkout saga.
"""

from ordersaga.cli.app import cli, main

__all__ = ["cli", "main"]
