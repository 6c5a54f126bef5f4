"""
Object storage integration for uploads, migrated files and image derivatives.

Supports R2 (Cloudflare) and other S3-compatible endpoints through
self-signed SigV4 requests, plus the legacy backend the files move away from.
Includes mock mode for local development without credentials.
"""
