"""Starlette middleware: authentication, request logging, and security headers."""
