"""
Role-based access control.

Modules:
- models: role, permission and user-override types (dataclasses + ORM)
- registry: process-wide role table with atomic reload
- resolver: effective permissions for a principal
"""
