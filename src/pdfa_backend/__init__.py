"""
PDF/A Backend - REST API for PDF to PDF/A conversion

This package provides a FastAPI-based web service that converts uploaded PDF
documents to PDF/A under a per-address daily quota. It enables:

- Batch PDF uploads with all-or-nothing quota admission
- Conversion job tracking with exactly-once quota consumption
- Limit expansion requests reviewed by an administrator
- Time-boxed expansions that lapse back to the default limit
- Retention cleanup of old jobs and stored files

Clients are identified by their network address; there are no accounts.

Key Components:
    - quota_ledger: Per-(address, day) usage and limits
    - job_tracker: Conversion job state machine
    - expansion_workflow: Expansion request state machine
    - conversion_service / expansion_service: Orchestration used by the API
    - main: FastAPI application factory and HTTP endpoint definitions
    - configuration: Config loading from YAML, .env and environment

Usage:
    Run the API server with:
        uvicorn --factory pdfa_backend.main:create_app --reload --host 0.0.0.0 --port 8000
"""
