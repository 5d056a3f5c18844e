"""replywise: learns reply patterns from email history and drafts replies."""

__version__ = "0.1.0"
