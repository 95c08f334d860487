"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import CIVMModalCLI, main

__all__ = ['CIVMModalCLI', 'main']
