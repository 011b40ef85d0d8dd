"""
Backdrop replacement microservice package.

Exposes the building blocks for resolving input images, running the external
background-removal tool, compositing onto a solid color, and serving the
FastAPI application.
"""
