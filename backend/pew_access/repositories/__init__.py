"""
Database repositories and the evaluator sources built on them.
"""
