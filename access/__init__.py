"""
Product Authentication Registry - Access Control

Role-based authorization and the mirrored role table.
"""

from .roles import AuthorizationGate, RoleMirror

__all__ = ['AuthorizationGate', 'RoleMirror']
