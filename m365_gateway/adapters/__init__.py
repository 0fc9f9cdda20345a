"""
Adapters layer for external system integrations.

This package contains adapters that wrap external services with clean,
normalized interfaces. Adapters handle authentication, retries, rate
limiting, and data normalization.

Organization:
- ms365/: Microsoft 365 Graph API operations
"""
