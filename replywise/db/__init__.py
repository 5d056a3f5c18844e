"""Database clients and store implementations."""
