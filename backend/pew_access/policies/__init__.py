"""
Feature policies: models, predicate trees, target matching and the engine.
"""
