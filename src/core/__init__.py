"""Core application components.

This module provides the foundational components for the Arc integrations API:
- Database connection management via Prisma
- Application settings and configuration
- Credential encryption for stored OAuth tokens
"""
