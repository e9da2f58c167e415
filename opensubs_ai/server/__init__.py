"""Local HTTP bridge (FastAPI) over the orchestration facade."""
