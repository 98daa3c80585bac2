"""
School Forms Backend - intake API for contact and admission enquiries

This package provides a FastAPI-based web service that receives the school
website's two forms and makes sure every submission reaches the office:

- Required-field and email validation for both forms
- Admission enquiry PDFs (header, student photo, field tables)
- Email delivery to the operator mailbox over SMTP or an HTTP email API
- On-disk fallback storage with an operator listing

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - submissions: Per-request orchestration (validate, render, store, send)
    - validation: Required-field, email and photo checks
    - renderer: Admission PDF rendering with reportlab
    - dispatcher: Transport resolution, timeouts and retries
    - transports: SMTP (aiosmtplib) and HTTP API (httpx) senders
    - fallback_store: Filesystem persistence and listings
    - configuration: OmegaConf settings with environment overrides
    - models: Dataclasses and Pydantic models shared by the modules above

Usage:
    Run the API server with:
        uvicorn school_forms_backend.main:app --host 0.0.0.0 --port 5000

Architecture Principles:
    - An accepted admission is always on disk before the response is sent
    - Email problems degrade to storage, never to a lost submission
    - Credentials come from the environment, never from source
"""
