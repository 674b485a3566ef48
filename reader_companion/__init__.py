"""Reader Companion: generation concurrency and summary scheduling core."""
