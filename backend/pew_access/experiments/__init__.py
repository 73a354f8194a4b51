"""
A/B experiments: definitions and deterministic variant assignment.
"""
