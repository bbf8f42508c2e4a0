"""
Business logic services for the marketplace payment pipeline.
"""
