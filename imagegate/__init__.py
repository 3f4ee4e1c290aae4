"""Custom container image requests: approval gate, chainctl gateway and build monitoring."""
