"""
Core domain logic - framework-agnostic.

Nothing in here imports FastAPI, httpx or database drivers.
"""
