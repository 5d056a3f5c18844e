"""Core module for replywise configuration and utilities."""
