"""
Photo submission preparation service package.

Exposes reusable primitives for admitting up to five photographs against the
submission rules, normalizing them into budget-fitting JPEGs, and serving the
FastAPI application.
"""
