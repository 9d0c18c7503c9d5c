# AuthGuard Test Suite
"""
Test suite including:
- Unit tests for every component
- Integration tests for the authentication flows
- Security tests (invalid inputs, tampering, brute force)

Run with: pytest
"""
