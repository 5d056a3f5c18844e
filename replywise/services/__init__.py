"""Drafting services: filtering, caching, draft selection and coordination."""
