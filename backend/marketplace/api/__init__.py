"""
API routers for the marketplace payments backend.
"""
