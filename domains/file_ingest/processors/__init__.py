"""
File Ingestion Processors

Shared processing utilities for file ingestion:
- executor.py - Worker pool with retry, backoff and reconciliation
- units.py - Pluggable per-file units and failure classification
- aggregator.py - Summary counts, trends and paged listing
"""
