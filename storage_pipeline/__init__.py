"""
Storage Pipeline - object storage client and batch jobs for the operator dashboard.

This package contains the complete service:
- core: Framework-agnostic job orchestration (migration, derivative retrofit)
- infrastructure: External service integrations (object storage, metadata store, images)
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
