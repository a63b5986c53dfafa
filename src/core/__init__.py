"""
Core Module - the Analytics Hub authorization core.

This module provides:
- Access control: users, roles, permissions, menus, content and the grants
  between them (``core.access_control``)
- ALLOW / DENY resolution with time-boxed, prioritised, deny-capable grants
- Decision caching with tag-based invalidation
"""
