"""
Jurisdiction and per-user compliance gate.
"""
