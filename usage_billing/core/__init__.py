"""
Core modules for Usage Billing.

This package contains SMS segmentation, usage pricing, currency
conversion, cost aggregation and invoice construction.
"""
