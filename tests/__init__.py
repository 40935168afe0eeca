"""
AI Gateway Test Suite
=====================

Run all tests:
    pytest tests/ -v

Run with coverage:
    pytest tests/ --cov=ai_gateway --cov-report=html

Security note: These tests use fake providers and mocked HTTP
transports and do not require real API keys.
"""
