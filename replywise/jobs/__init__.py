"""Background jobs for replywise."""
