"""Shared utilities and cross-domain components.

This module contains utilities used across multiple domains:
- Exception classes for consistent error handling
- Cron/internal endpoint authorization
- Transactional email delivery
"""
