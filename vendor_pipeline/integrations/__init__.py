"""Adapters for the external collaborators: SMS, inference, valuation, intake."""
