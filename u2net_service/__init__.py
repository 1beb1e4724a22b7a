"""
U2Net background removal microservice package.

Exposes reusable primitives for loading images and the saliency model,
refining masks, capturing seed points, and serving the FastAPI application.
"""
