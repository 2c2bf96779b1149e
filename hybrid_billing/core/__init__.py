"""
Core modules for hybrid billing.

This package contains consumption planning, transactional execution,
purchase ingestion and the service facade.
"""
