"""
productauth CLI Commands Package

Command modules for the product authentication registry CLI.
"""

__all__ = ['products', 'roles', 'config']
