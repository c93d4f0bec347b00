"""
FastAPI routers for the listing converter API.

Each module groups the endpoints of one domain: import jobs and mapping
templates.
"""
