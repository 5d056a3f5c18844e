"""Pattern learning: similarity, extraction, matching and learning loops."""
