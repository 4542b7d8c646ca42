"""Vendor acquisition pipeline: SMS conversation, underwriting and offers."""
