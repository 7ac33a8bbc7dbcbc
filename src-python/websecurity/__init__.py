"""websecurity — policy-driven CORS and CSRF protection for Starlette/FastAPI apps."""

__version__ = "0.1.0"
