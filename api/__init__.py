"""
API Module for the WhatsApp lead-qualification agent.

FastAPI application with routes for:
- WhatsApp webhook verification and ingestion
- Conversation and analytics queries
- Slot lookup, test forwarding and manual sweeps

The application lives in api.main (``uvicorn api.main:app``).
"""
