"""
FastAPI routers for the Event Atlas API, one module per resource.
"""
