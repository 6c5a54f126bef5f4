"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- storage: Object storage (S3-compatible) and the legacy backend
- metadata: Snowflake metadata store and credential lookup
- images: Image resizing (Pillow)

These wrappers translate between external formats and our domain models.
"""
