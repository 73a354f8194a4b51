"""
Route guard: declarative route table, the access orchestrator and its
FastAPI middleware.
"""
