"""
Marketplace payments backend.

Checkout sessions across payment providers, webhook reconciliation, order
processing, template delivery and invoicing.
"""
